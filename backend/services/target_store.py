"""
Sales Targets - Store Mongo (collection customer_targets)

Seul point d'accès DB du moteur de rollover.
Toutes les écritures passent par un compare-and-swap sur `revision`:
une écriture qui part d'une lecture périmée échoue au lieu d'écraser.
"""

import logging
from typing import Any, Dict, List, Optional

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from config import db as default_db, to_iso
from services.event_logger import log_event
from services.periods import get_period_type_or_raise

logger = logging.getLogger("target_store")

TARGETS_COLLECTION = "customer_targets"
RUNS_COLLECTION = "target_scheduler_runs"


class PersistenceError(Exception):
    """Échec lecture/écriture Mongo (ou CAS perdu trop de fois)"""
    pass


class TargetNotFound(Exception):
    pass


def due_recurring_query(period_type, now) -> Dict[str, Any]:
    """Targets récurrents actifs dont la période courante est terminée"""
    return {
        "is_recurring": True,
        "status": "active",
        "period": get_period_type_or_raise(period_type).value,
        "current_period_end": {"$lt": to_iso(now)},
    }


def due_non_recurring_query(now) -> Dict[str, Any]:
    """Targets ponctuels actifs dont la fenêtre est dépassée"""
    return {
        "is_recurring": False,
        "status": "active",
        "current_period_end": {"$lt": to_iso(now)},
    }


class TargetStore:
    """
    Accès Mongo aux targets.

    Les documents sont échangés sous forme brute (dict sans _id);
    la conversion vers le modèle Target est faite par l'appelant.
    """

    def __init__(self, database=None):
        self.db = database if database is not None else default_db
        self.collection = self.db[TARGETS_COLLECTION]

    async def ensure_indexes(self):
        await self.collection.create_index("id", unique=True)
        await self.collection.create_index([
            ("status", ASCENDING),
            ("is_recurring", ASCENDING),
            ("period", ASCENDING),
            ("current_period_end", ASCENDING),
        ])
        await self.collection.create_index([("card_code", ASCENDING), ("sales_agent_id", ASCENDING)])

    async def find_due_recurring(self, period_type, now) -> List[Dict[str, Any]]:
        try:
            return await self.collection.find(
                due_recurring_query(period_type, now), {"_id": 0}
            ).to_list(None)
        except PyMongoError as e:
            raise PersistenceError(f"find_due_recurring({period_type}) failed: {e}") from e

    async def find_due_non_recurring(self, now) -> List[Dict[str, Any]]:
        try:
            return await self.collection.find(
                due_non_recurring_query(now), {"_id": 0}
            ).to_list(None)
        except PyMongoError as e:
            raise PersistenceError(f"find_due_non_recurring failed: {e}") from e

    async def get(self, target_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.collection.find_one({"id": target_id}, {"_id": 0})
        except PyMongoError as e:
            raise PersistenceError(f"get({target_id}) failed: {e}") from e

    async def insert(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        doc = {**doc, "revision": 0}
        try:
            await self.collection.insert_one(dict(doc))
        except PyMongoError as e:
            raise PersistenceError(f"insert({doc.get('id')}) failed: {e}") from e
        return doc

    async def replace_if_revision(
        self, target_id: str, expected_revision: int, doc: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Remplace le document seulement si sa revision est toujours `expected_revision`.

        Returns:
            Le document écrit (revision incrémentée), ou None si le CAS a échoué
        """
        new_doc = {**doc, "id": target_id, "revision": expected_revision + 1}
        new_doc.pop("_id", None)

        query = {"id": target_id, "revision": expected_revision}
        if expected_revision == 0:
            # Documents créés avant l'ajout du champ revision
            query = {"id": target_id, "$or": [{"revision": 0}, {"revision": {"$exists": False}}]}

        try:
            written = await self.collection.find_one_and_replace(
                query,
                new_doc,
                projection={"_id": 0},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            raise PersistenceError(f"replace({target_id}) failed: {e}") from e

        if written is None:
            logger.info(f"[STORE] CAS miss on target {target_id} (expected revision {expected_revision})")
        return written

    # ==================== AUDIT / RAPPORTS ====================

    async def record_event(self, action: str, target_id: str, details: dict = None):
        """Trace d'audit (event_log). Ne lève jamais."""
        await log_event(
            action=action,
            entity_type="customer_target",
            entity_id=target_id,
            details=details,
            database=self.db,
        )

    async def save_run(self, report: Dict[str, Any]):
        try:
            await self.db[RUNS_COLLECTION].insert_one({**report})
        except PyMongoError as e:
            logger.error(f"[STORE] Could not save scheduler run report: {e}")

    async def last_runs(self, limit: int = 10) -> List[Dict[str, Any]]:
        try:
            return await self.db[RUNS_COLLECTION].find(
                {}, {"_id": 0}
            ).sort("run_at", -1).to_list(limit)
        except PyMongoError as e:
            raise PersistenceError(f"last_runs failed: {e}") from e
