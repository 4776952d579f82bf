"""
Helpers de test: store mémoire (même interface que TargetStore, CAS inclus),
horloge fixe, fabrique de targets.
"""

import copy
from datetime import datetime, timezone

from config import to_iso
from models.target import Target, TargetCreate
from services.periods import get_period_type_or_raise
from services.target_store import PersistenceError


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class InMemoryTargetStore:
    """
    Store mémoire pour les tests.

    fail_on_replace: ids dont l'écriture lève PersistenceError
    fail_find: la requête des targets dus lève PersistenceError
    before_replace: callback async(target_id) appelé avant chaque CAS
                    (simule une écriture concurrente)
    """

    def __init__(self):
        self.docs = {}
        self.events = []
        self.runs = []
        self.fail_on_replace = set()
        self.fail_find = False
        self.before_replace = None
        self.replace_calls = 0

    async def ensure_indexes(self):
        return None

    async def find_due_recurring(self, period_type, now):
        if self.fail_find:
            raise PersistenceError("connection refused")
        period = get_period_type_or_raise(period_type).value
        now_s = to_iso(now)
        return [
            copy.deepcopy(d) for d in self.docs.values()
            if d.get("is_recurring") is True
            and d.get("status") == "active"
            and d.get("period") == period
            and d.get("current_period_end") < now_s
        ]

    async def find_due_non_recurring(self, now):
        if self.fail_find:
            raise PersistenceError("connection refused")
        now_s = to_iso(now)
        return [
            copy.deepcopy(d) for d in self.docs.values()
            if d.get("is_recurring") is False
            and d.get("status") == "active"
            and d.get("current_period_end") < now_s
        ]

    async def get(self, target_id):
        doc = self.docs.get(target_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def insert(self, doc):
        doc = {**copy.deepcopy(doc), "revision": 0}
        self.docs[doc["id"]] = doc
        return copy.deepcopy(doc)

    async def replace_if_revision(self, target_id, expected_revision, doc):
        self.replace_calls += 1
        if self.before_replace is not None:
            await self.before_replace(target_id)
        if target_id in self.fail_on_replace:
            raise PersistenceError(f"write failed for {target_id}")
        current = self.docs.get(target_id)
        if current is None or current.get("revision", 0) != expected_revision:
            return None
        new_doc = {**copy.deepcopy(doc), "id": target_id, "revision": expected_revision + 1}
        self.docs[target_id] = new_doc
        return copy.deepcopy(new_doc)

    async def record_event(self, action, target_id, details=None):
        self.events.append({"action": action, "entity_id": target_id, "details": details or {}})

    async def save_run(self, report):
        self.runs.append(copy.deepcopy(report))

    async def last_runs(self, limit=10):
        return sorted(self.runs, key=lambda r: r["run_at"], reverse=True)[:limit]

    # Helpers de test
    def target(self, target_id) -> Target:
        return Target.from_mongo(self.docs[target_id])


def make_target(
    reference: datetime,
    period: str = "monthly",
    target_amount: float = 5000,
    achieved_amount: float = 0,
    is_recurring: bool = True,
    status: str = "active",
    card_code: str = "C10023",
) -> Target:
    target = Target.new(
        TargetCreate(
            card_code=card_code,
            card_name=f"Client {card_code}",
            sales_agent_id="agent-1",
            target_amount=target_amount,
            period=period,
            is_recurring=is_recurring,
        ),
        reference,
    )
    target.achieved_amount = achieved_amount
    target.recompute_achievement_rate()
    target.status = status
    return target


class FixedClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current


