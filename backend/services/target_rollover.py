"""
╔══════════════════════════════════════════════════════════════════════════════╗
║  Sales Targets - Rollover Engine                                             ║
║                                                                              ║
║  Avance chaque target récurrent actif dont la période est terminée:          ║
║  snapshot dans l'historique, fenêtre suivante, remise à zéro.                ║
║                                                                              ║
║  IDEMPOTENCE (par target, par frontière de période), SANS verrou:            ║
║  - CAS sur `revision`: une écriture basée sur une lecture périmée échoue     ║
║  - `period_sequence` relu après un CAS perdu: s'il a bougé, une autre        ║
║    exécution a déjà avancé le target -> skipped                              ║
║  - Guard A: label courant déjà dans l'historique -> pas de doublon           ║
║  - Guard B: label SUIVANT déjà dans l'historique -> target ignoré            ║
║                                                                              ║
║  ISOLATION: l'échec d'un target est compté et loggé, le batch continue.      ║
╚══════════════════════════════════════════════════════════════════════════════╝
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from config import ensure_utc, to_iso, utc_now
from models.target import (
    AttributionRecord,
    Target,
    TargetCreate,
    TargetStatus,
    validate_amount,
)
from services.periods import PeriodType, get_period_type_or_raise
from services.target_store import PersistenceError, TargetNotFound, TargetStore

logger = logging.getLogger("target_rollover")

MAX_CAS_ATTEMPTS = 5

# Issues d'un rollover unitaire
ROLLED_OVER = "rolled_over"
NOT_DUE = "not_due"
NEXT_PERIOD_ARCHIVED = "next_period_archived"
ADVANCED_CONCURRENTLY = "advanced_concurrently"
DELETED = "deleted"


class TargetRolloverEngine:
    """
    Moteur de rollover + sweep d'expiration + mutation achievement.

    `store` et `clock` sont injectables (tests: store mémoire, horloge fixe).
    """

    def __init__(self, store: Optional[TargetStore] = None, clock: Optional[Callable[[], datetime]] = None):
        self.store = store if store is not None else TargetStore()
        self.clock = clock or utc_now

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    def _resolve_now(self, now: Optional[datetime]) -> datetime:
        return ensure_utc(now) if now is not None else self.now()

    # ==================== ROLLOVER BATCH ====================

    async def rollover_due_periods(self, period_type, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Rollover de tous les targets récurrents actifs de ce type dont
        current_period_end < now.

        Returns:
            {success, period_type, total_found, rolled_over, skipped, errors, message}
        """
        period = get_period_type_or_raise(period_type)
        now = self._resolve_now(now)

        try:
            candidates = await self.store.find_due_recurring(period, now)
        except PersistenceError as e:
            logger.error(f"[ROLLOVER] Could not load due {period.value} targets: {e}")
            return {
                "success": False,
                "period_type": period.value,
                "total_found": 0,
                "rolled_over": 0,
                "skipped": 0,
                "errors": 1,
                "error": str(e),
                "message": f"Error loading {period.value} targets to rollover",
            }

        logger.info(f"[ROLLOVER] Found {len(candidates)} {period.value} targets to rollover")

        rolled_over = 0
        skipped = 0
        errors = 0

        for doc in candidates:
            target_id = doc.get("id")
            try:
                outcome, _ = await self._rollover_one(doc, period, now)
            except PersistenceError as e:
                errors += 1
                logger.error(f"[ROLLOVER] Persistence error on target {target_id}: {e}")
                continue
            except Exception as e:
                errors += 1
                logger.exception(f"[ROLLOVER] Error rolling over target {target_id}: {e}")
                continue

            if outcome == ROLLED_OVER:
                rolled_over += 1
            else:
                skipped += 1

        return {
            "success": True,
            "period_type": period.value,
            "total_found": len(candidates),
            "rolled_over": rolled_over,
            "skipped": skipped,
            "errors": errors,
            "message": (
                f"Successfully rolled over {rolled_over} {period.value} targets, "
                f"skipped {skipped}, errors {errors}"
            ),
        }

    async def _rollover_one(self, doc: Dict[str, Any], period: PeriodType, now: datetime) -> Tuple[str, Dict[str, Any]]:
        """
        Rollover d'UN target, avec CAS.

        Returns:
            (outcome, document courant)
        """
        seen_sequence = doc.get("period_sequence", 0)

        for _ in range(MAX_CAS_ATTEMPTS):
            target = Target.from_mongo(doc)

            if target.period_sequence != seen_sequence:
                logger.info(f"[ROLLOVER] Target {target.id} already advanced by another run, skipping")
                return ADVANCED_CONCURRENTLY, doc

            if target.period != period.value or not target.is_rollover_candidate(now):
                return NOT_DUE, doc

            current_label = target.current_period_label()
            next_label = target.next_period_label()

            if target.has_history(next_label):
                logger.warning(
                    f"[ROLLOVER] Target {target.id} already has next period {next_label}, skipping rollover"
                )
                return NEXT_PERIOD_ARCHIVED, doc

            if target.has_history(current_label):
                logger.warning(
                    f"[ROLLOVER] Target {target.id} already archived {current_label}, advancing without new entry"
                )

            snapshot = {
                "target_amount": target.target_amount,
                "achieved_amount": target.achieved_amount,
                "achievement_rate": target.achievement_rate,
            }
            target.start_new_period(now)

            written = await self.store.replace_if_revision(target.id, target.revision, target.to_mongo())
            if written is not None:
                new_label = target.current_period_label()
                logger.info(
                    f"[ROLLOVER] Rolled over {period.value} target {target.id} "
                    f"({target.card_name}) from {current_label} to {new_label}"
                )
                await self.store.record_event("target_rolled_over", target.id, {
                    "from_period": current_label,
                    "to_period": new_label,
                    "period_sequence": target.period_sequence,
                    **snapshot,
                })
                return ROLLED_OVER, written

            # CAS perdu: relire et réévaluer
            doc = await self.store.get(target.id)
            if doc is None:
                return DELETED, {}

        raise PersistenceError(
            f"Target {doc.get('id')}: rollover lost {MAX_CAS_ATTEMPTS} concurrent updates in a row"
        )

    async def rollover_target(self, target_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Rollover manuel d'un seul target (même chemin que le batch)"""
        now = self._resolve_now(now)
        doc = await self.store.get(target_id)
        if doc is None:
            raise TargetNotFound(f"Target {target_id} not found")

        before = Target.from_mongo(doc)
        from_period = before.current_period_label()
        outcome, current = await self._rollover_one(doc, get_period_type_or_raise(before.period), now)

        to_period = Target.from_mongo(current).current_period_label() if current else None
        return {
            "success": True,
            "target_id": target_id,
            "rolled_over": outcome == ROLLED_OVER,
            "reason": outcome,
            "from_period": from_period,
            "to_period": to_period,
        }

    async def catch_up_rollover(
        self, period_type, now: Optional[datetime] = None, max_cycles: int = 24
    ) -> Dict[str, Any]:
        """
        Répète rollover_due_periods tant qu'au moins un target avance.
        Un target en retard de N périodes avance d'une période par passe
        et chaque période traversée est archivée.
        """
        period = get_period_type_or_raise(period_type)
        now = self._resolve_now(now)

        cycles = 0
        total_rolled = 0
        total_errors = 0
        success = True

        while cycles < max_cycles:
            result = await self.rollover_due_periods(period, now)
            cycles += 1
            total_errors += result["errors"]
            if not result["success"]:
                success = False
                break
            total_rolled += result["rolled_over"]
            if result["rolled_over"] == 0:
                break

        return {
            "success": success,
            "period_type": period.value,
            "cycles": cycles,
            "rolled_over": total_rolled,
            "errors": total_errors,
            "message": f"Catch-up {period.value}: {total_rolled} period advances in {cycles} passes",
        }

    # ==================== EXPIRY SWEEP ====================

    async def sweep_expired(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Targets ponctuels actifs dont la fenêtre est dépassée -> expired"""
        now = self._resolve_now(now)

        try:
            candidates = await self.store.find_due_non_recurring(now)
        except PersistenceError as e:
            logger.error(f"[EXPIRY] Could not load expired targets: {e}")
            return {
                "success": False,
                "total_found": 0,
                "expired": 0,
                "skipped": 0,
                "errors": 1,
                "error": str(e),
                "message": "Error updating expired targets",
            }

        expired = 0
        skipped = 0
        errors = 0

        for doc in candidates:
            target_id = doc.get("id")
            try:
                if await self._expire_one(doc, now):
                    expired += 1
                else:
                    skipped += 1
            except PersistenceError as e:
                errors += 1
                logger.error(f"[EXPIRY] Persistence error on target {target_id}: {e}")
            except Exception as e:
                errors += 1
                logger.exception(f"[EXPIRY] Error expiring target {target_id}: {e}")

        logger.info(f"[EXPIRY] Updated {expired} targets to expired status")

        return {
            "success": True,
            "total_found": len(candidates),
            "expired": expired,
            "skipped": skipped,
            "errors": errors,
            "message": f"Updated {expired} targets to expired status",
        }

    async def _expire_one(self, doc: Dict[str, Any], now: datetime) -> bool:
        for _ in range(MAX_CAS_ATTEMPTS):
            target = Target.from_mongo(doc)
            if target.is_recurring or target.status != TargetStatus.ACTIVE or not target.is_due(now):
                return False

            target.mark_expired(now)
            written = await self.store.replace_if_revision(target.id, target.revision, target.to_mongo())
            if written is not None:
                await self.store.record_event("target_expired", target.id, {
                    "period": target.current_period_label(),
                    "current_period_end": to_iso(target.current_period_end),
                    "achieved_amount": target.achieved_amount,
                    "achievement_rate": target.achievement_rate,
                })
                return True

            doc = await self.store.get(target.id)
            if doc is None:
                return False

        raise PersistenceError(f"Target {doc.get('id')}: expiry lost {MAX_CAS_ATTEMPTS} concurrent updates in a row")

    # ==================== ACHIEVEMENT FEED ====================

    async def record_achievement(
        self,
        target_id: str,
        amount: Any,
        attribution: Optional[AttributionRecord] = None,
        now: Optional[datetime] = None,
    ) -> Target:
        """
        Ajoute un montant au target (flux commandes/factures).

        Raises:
            InvalidAmount: montant refusé, rien n'est lu ni écrit
            TargetNotFound
            PersistenceError
        """
        validate_amount(amount)
        now = self._resolve_now(now)

        for _ in range(MAX_CAS_ATTEMPTS):
            doc = await self.store.get(target_id)
            if doc is None:
                raise TargetNotFound(f"Target {target_id} not found")

            target = Target.from_mongo(doc)
            target.record_achievement(amount, now, attribution)

            written = await self.store.replace_if_revision(target.id, target.revision, target.to_mongo())
            if written is not None:
                logger.info(
                    f"[ACHIEVEMENT] Target {target_id} +{float(amount)} "
                    f"-> {target.achieved_amount} ({target.achievement_rate:.1f}%)"
                )
                await self.store.record_event("achievement_recorded", target_id, {
                    "amount": float(amount),
                    "period": target.current_period_label(),
                    "achieved_amount": target.achieved_amount,
                    "achievement_rate": target.achievement_rate,
                })
                return Target.from_mongo(written)

        raise PersistenceError(f"Target {target_id}: achievement lost {MAX_CAS_ATTEMPTS} concurrent updates in a row")

    # ==================== CRÉATION / LECTURE ====================

    async def create_target(self, data: TargetCreate, now: Optional[datetime] = None) -> Target:
        now = self._resolve_now(now)
        target = Target.new(data, now)
        await self.store.insert(target.to_mongo())
        await self.store.record_event("target_created", target.id, {
            "period": target.current_period_label(),
            "target_amount": target.target_amount,
            "is_recurring": target.is_recurring,
        })
        logger.info(f"[TARGET] Created {target.period} target {target.id} for {target.card_name}")
        return target

    async def get_target_history(self, target_id: str) -> Dict[str, Any]:
        doc = await self.store.get(target_id)
        if doc is None:
            raise TargetNotFound(f"Target {target_id} not found")
        target = Target.from_mongo(doc)
        return {
            "success": True,
            "target_id": target.id,
            "customer_name": target.card_name,
            "period": target.period,
            "current_period": target.current_period_label(),
            "historical_performance": [
                h.model_dump(mode="json") for h in target.historical_performance
            ],
        }
