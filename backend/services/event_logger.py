"""
Sales Targets - Event Logger

Audit trail des mutations de targets (rollover, expiration, achievement).
Single function to call from any route/service.

FAIL-SOFT: une erreur d'écriture est loggée, jamais propagée.
"""

import logging
import uuid
from config import db as default_db, now_iso

logger = logging.getLogger("event_logger")


async def log_event(
    action: str,
    entity_type: str,
    entity_id: str,
    user: str = "system",
    details: dict = None,
    database=None,
):
    """
    Write a single event to the event_log collection.

    Args:
        action: e.g. target_rolled_over, target_expired, achievement_recorded
        entity_type: customer_target
        entity_id: ID of the target
        user: email of user performing action ("system" for the scheduler)
        details: free-form dict (period, amounts, result...)
        database: DB à utiliser (défaut: config.db)
    """
    database = database if database is not None else default_db
    try:
        await database.event_log.insert_one({
            "id": str(uuid.uuid4()),
            "action": action,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "user": user,
            "details": details or {},
            "created_at": now_iso()
        })
    except Exception as e:
        logger.error(f"[EVENT_LOG] Could not write {action} for {entity_id}: {e}")
