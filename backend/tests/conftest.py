"""
Fixtures partagées: store mémoire, horloge fixe, moteur de rollover.
"""

import pytest

from services.target_rollover import TargetRolloverEngine
from tests.helpers import FixedClock, InMemoryTargetStore, utc
from models.target import Target


@pytest.fixture
def store():
    return InMemoryTargetStore()


@pytest.fixture
def clock():
    return FixedClock(utc(2024, 8, 2, 0, 1))


@pytest.fixture
def engine(store, clock):
    return TargetRolloverEngine(store=store, clock=clock)


@pytest.fixture
def add_target(store):
    """Insère un target dans le store et retourne son id"""
    async def _add(target: Target) -> str:
        await store.insert(target.to_mongo())
        return target.id
    return _add
