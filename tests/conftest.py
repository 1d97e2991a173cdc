from __future__ import annotations

import pytest

from miner import events
from miner.clock import ManualClock
from miner.events import EventBus
from miner.settings import Settings
from miner.simulation import Simulation
from miner.storage import MemoryStorage
from miner.store import ResourceState
from miner.upgrades import UpgradeManager

# 2023-11-14T22:13:20Z, mid-week so day/week rollovers are explicit in tests.
START_MS = 1_700_000_000_000.0


@pytest.fixture
def start_ms() -> float:
    return START_MS


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START_MS)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded(bus):
    """Every emitted event as (name, payload), in order."""
    seen = []

    def recorder(name):
        return lambda **payload: seen.append((name, payload))

    for name in (
        events.ACHIEVEMENT_UNLOCKED, events.MILESTONE_CROSSED, events.OFFLINE_REWARDS_AVAILABLE,
        events.OFFLINE_REWARDS_CLAIMED, events.UPGRADE_PURCHASED, events.MINING_STARTED,
        events.MINING_STOPPED, events.HIGH_SCORE, events.SAVE_STATUS, events.RECOVERED_FROM_BACKUP,
    ):
        bus.subscribe(name, recorder(name))
    return seen


@pytest.fixture
def sim(settings, bus) -> Simulation:
    state = ResourceState.fresh(START_MS)
    return Simulation(state=state, upgrade_manager=UpgradeManager(), settings=settings, events=bus)
