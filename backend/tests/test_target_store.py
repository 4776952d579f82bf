"""
Sales Targets - Store Mongo (requêtes, compare-and-swap sur revision)
Run: cd backend && pytest tests/test_target_store.py -v
"""

import pytest
from mongomock_motor import AsyncMongoMockClient
from pymongo.errors import PyMongoError

from services.target_rollover import TargetRolloverEngine
from services.target_store import (
    PersistenceError,
    TargetStore,
    due_non_recurring_query,
    due_recurring_query,
)
from tests.helpers import FixedClock, make_target, utc


AUG_2 = utc(2024, 8, 2)


@pytest.fixture
def mongo_db():
    return AsyncMongoMockClient()["sales_targets_test"]


@pytest.fixture
def mongo_store(mongo_db):
    return TargetStore(database=mongo_db)


class _BrokenCollection:
    async def find_one(self, *args, **kwargs):
        raise PyMongoError("connection refused")

    def find(self, *args, **kwargs):
        raise PyMongoError("connection refused")


class TestQueries:
    def test_due_recurring_query(self):
        assert due_recurring_query("monthly", utc(2024, 8, 1, 0, 1)) == {
            "is_recurring": True,
            "status": "active",
            "period": "monthly",
            "current_period_end": {"$lt": "2024-08-01T00:01:00.000+00:00"},
        }

    def test_due_non_recurring_query(self):
        assert due_non_recurring_query(utc(2024, 8, 2, 1, 0)) == {
            "is_recurring": False,
            "status": "active",
            "current_period_end": {"$lt": "2024-08-02T01:00:00.000+00:00"},
        }

    def test_invalid_period_type(self):
        with pytest.raises(ValueError):
            due_recurring_query("weekly", AUG_2)

    @pytest.mark.asyncio
    async def test_find_due_recurring_compares_iso_strings(self, mongo_store):
        july = make_target(utc(2024, 7, 10))
        august = make_target(utc(2024, 8, 1))
        yearly = make_target(utc(2023, 5, 1), period="yearly")
        for target in (july, august, yearly):
            await mongo_store.insert(target.to_mongo())

        due = await mongo_store.find_due_recurring("monthly", AUG_2)

        assert [d["id"] for d in due] == [july.id]
        assert "_id" not in due[0]

    @pytest.mark.asyncio
    async def test_find_due_non_recurring(self, mongo_store):
        one_shot = make_target(utc(2024, 7, 10), is_recurring=False)
        recurring = make_target(utc(2024, 7, 10))
        for target in (one_shot, recurring):
            await mongo_store.insert(target.to_mongo())

        due = await mongo_store.find_due_non_recurring(AUG_2)

        assert [d["id"] for d in due] == [one_shot.id]


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_matching_revision_is_written(self, mongo_store):
        target = make_target(utc(2024, 7, 10))
        await mongo_store.insert(target.to_mongo())

        target.achieved_amount = 700
        written = await mongo_store.replace_if_revision(target.id, 0, target.to_mongo())

        assert written["revision"] == 1
        assert written["achieved_amount"] == 700
        assert "_id" not in written
        stored = await mongo_store.get(target.id)
        assert stored["revision"] == 1

    @pytest.mark.asyncio
    async def test_stale_revision_returns_none(self, mongo_store):
        target = make_target(utc(2024, 7, 10))
        await mongo_store.insert(target.to_mongo())
        await mongo_store.replace_if_revision(target.id, 0, target.to_mongo())

        target.achieved_amount = 999
        written = await mongo_store.replace_if_revision(target.id, 0, target.to_mongo())

        assert written is None
        stored = await mongo_store.get(target.id)
        assert stored["revision"] == 1
        assert stored["achieved_amount"] == 0

    @pytest.mark.asyncio
    async def test_document_without_revision_accepted(self, mongo_store, mongo_db):
        # Document créé avant l'ajout du champ revision
        target = make_target(utc(2024, 7, 10))
        legacy = target.to_mongo()
        legacy.pop("revision")
        await mongo_db.customer_targets.insert_one(legacy)

        written = await mongo_store.replace_if_revision(target.id, 0, target.to_mongo())

        assert written is not None
        assert written["revision"] == 1

    @pytest.mark.asyncio
    async def test_unknown_target_returns_none(self, mongo_store):
        target = make_target(utc(2024, 7, 10))
        assert await mongo_store.replace_if_revision(target.id, 0, target.to_mongo()) is None

    @pytest.mark.asyncio
    async def test_driver_error_wrapped(self, mongo_store):
        mongo_store.collection = _BrokenCollection()
        with pytest.raises(PersistenceError):
            await mongo_store.get("any")
        with pytest.raises(PersistenceError):
            await mongo_store.find_due_recurring("monthly", AUG_2)


class TestEngineOnMongo:
    @pytest.mark.asyncio
    async def test_rollover_through_mongo_store(self, mongo_store, mongo_db):
        engine = TargetRolloverEngine(store=mongo_store, clock=FixedClock(AUG_2))
        target = make_target(utc(2024, 7, 10), achieved_amount=4000)
        await mongo_store.insert(target.to_mongo())

        first = await engine.rollover_due_periods("monthly")
        second = await engine.rollover_due_periods("monthly")

        assert first["rolled_over"] == 1
        assert second["total_found"] == 0
        stored = await mongo_store.get(target.id)
        assert stored["current_period_start"] == "2024-08-01T00:00:00.000+00:00"
        assert [h["period"] for h in stored["historical_performance"]] == ["2024-07"]
        assert stored["revision"] == 1
        event = await mongo_db.event_log.find_one({"entity_id": target.id}, {"_id": 0})
        assert event["action"] == "target_rolled_over"
        assert event["entity_type"] == "customer_target"
