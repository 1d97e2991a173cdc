from __future__ import annotations

import asyncio

import pytest

from miner import events
from miner.clock import ManualClock
from miner.errors import ImportFormatError
from miner.save import BACKUP_KEY, SAVE_KEY, UPGRADES_BACKUP_KEY, UPGRADES_KEY
from miner.session import GameSession, run_for
from miner.settings import Settings
from miner.storage import FileStorage, MemoryStorage
from miner.types import LoadSource, PurchaseOutcome, SaveStatus

DAY_MS = 86_400_000


def _fast_settings() -> Settings:
    return Settings(
        mining_tick_ms=5,
        regen_tick_ms=5,
        autosave_interval_ms=20,
        backup_interval_ms=20,
        upgrade_backup_interval_ms=20,
    )


def test_first_load_starts_fresh(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, clock=clock)
    result = session.load()
    assert result.source is LoadSource.DEFAULTS
    assert session.upgrade_source is LoadSource.DEFAULTS
    assert session.state.points == 100
    assert not session.offline_credit.has_rewards


def test_offline_rewards_after_two_days(storage: MemoryStorage, clock: ManualClock, bus, recorded) -> None:
    first = GameSession(storage, clock=clock)
    first.load()
    assert first.start_mining()
    first.save()

    clock.advance(2 * DAY_MS)
    second = GameSession(storage, clock=clock, bus=bus)
    second.load()
    assert second.state.unclaimed_offline_rewards == pytest.approx(1.0 * 172_800 * 1.2)
    available = [p for name, p in recorded if name == events.OFFLINE_REWARDS_AVAILABLE]
    assert available and available[0]["amount"] == pytest.approx(207_360)
    assert second.state.last_save_time == clock.now_ms()

    claimed = second.claim_offline_rewards()
    assert claimed == pytest.approx(207_360)
    assert second.state.points == pytest.approx(100 + 207_360)

    third = GameSession(storage, clock=clock)
    third.load()
    assert third.state.unclaimed_offline_rewards == 0.0
    assert third.state.points == pytest.approx(100 + 207_360)


def test_idle_save_yields_no_offline_points(storage: MemoryStorage, clock: ManualClock) -> None:
    first = GameSession(storage, clock=clock)
    first.load()
    first.state.current_energy = 100.0
    first.save()

    clock.advance(60_000)
    second = GameSession(storage, clock=clock)
    second.load()
    assert second.state.unclaimed_offline_rewards == 0.0
    assert second.state.current_energy == pytest.approx(160.0)


def test_purchase_persists_immediately(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, clock=clock)
    session.load()
    result = session.purchase("mining-speed")
    assert result.outcome is PurchaseOutcome.SUCCESS
    assert storage.get(UPGRADES_KEY) is not None
    assert storage.get(SAVE_KEY) is not None

    reloaded = GameSession(storage, clock=clock)
    reloaded.load()
    assert reloaded.upgrade_source is LoadSource.PRIMARY
    assert reloaded.upgrades.get("mining-speed").level == 1
    assert reloaded.state.points_per_second == pytest.approx(1.5)
    assert reloaded.state.points == pytest.approx(75)


def test_failed_purchase_does_not_save(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, clock=clock)
    session.load()
    assert session.purchase("galactic-miner").outcome is PurchaseOutcome.INSUFFICIENT_FUNDS
    assert storage.get(SAVE_KEY) is None


def test_stop_mining_flushes_save(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, clock=clock)
    session.load()
    session.toggle_mining()
    clock.advance(1_000)
    assert not session.toggle_mining()
    assert storage.get(SAVE_KEY) is not None
    assert session.state.last_save_time == clock.now_ms()
    assert session.persistence.status is SaveStatus.SUCCESS


def test_corrupt_primary_recovers_from_backup(storage: MemoryStorage, clock: ManualClock, bus, recorded) -> None:
    first = GameSession(storage, clock=clock)
    first.load()
    first.state.points = 4_000.0
    first.persistence.save_backup(first.state, clock.now_ms())
    storage.set(SAVE_KEY, '{"points": 1}')

    second = GameSession(storage, clock=clock, bus=bus)
    assert second.load().source is LoadSource.BACKUP
    assert second.state.points == 4_000.0
    assert any(name == events.RECOVERED_FROM_BACKUP for name, _ in recorded)


def test_export_import_between_users(storage: MemoryStorage, clock: ManualClock) -> None:
    source = GameSession(storage, clock=clock, user_id="a")
    source.load()
    source.purchase("mining-speed")
    source.state.points = 9_000.0
    text = source.export(encrypted=True)

    target = GameSession(storage, clock=clock, user_id="b")
    target.load()
    target.import_text(text)
    assert target.state.points == 9_000.0
    assert target.upgrades.get("mining-speed").level == 1
    assert storage.get(f"{SAVE_KEY}_b") is not None

    with pytest.raises(ImportFormatError):
        target.import_text("nonsense")


def test_periodic_tasks_tick_and_persist(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, _fast_settings(), clock=clock)

    async def scenario() -> None:
        session.load()
        session.start_mining()
        await session.start()
        assert session.running
        await asyncio.sleep(0.15)
        await session.close()

    asyncio.run(scenario())
    assert not session.running
    assert session.state.points > 100
    assert session.state.total_points_earned > 0
    assert storage.get(BACKUP_KEY) is not None
    assert storage.get(UPGRADES_BACKUP_KEY) is not None

    reloaded = GameSession(storage, clock=clock)
    reloaded.load()
    assert reloaded.state.points == pytest.approx(session.state.points)


def test_run_for_closes_with_final_save(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, _fast_settings(), clock=clock)
    session.load()
    session.start_mining()
    asyncio.run(run_for(session, 0.05))
    assert not session.running
    saved = GameSession(storage, clock=clock)
    saved.load()
    assert saved.load_source is LoadSource.PRIMARY
    assert saved.state.total_points_earned == pytest.approx(session.state.total_points_earned)


def test_forced_stop_saves(storage: MemoryStorage, clock: ManualClock) -> None:
    session = GameSession(storage, _fast_settings(), clock=clock)
    session.load()
    session.state.current_energy = 1.0
    session.start_mining()

    async def scenario() -> None:
        await session.start()
        await asyncio.sleep(0.05)
        assert not session.state.is_mining
        assert storage.get(SAVE_KEY) is not None
        await session.close()

    asyncio.run(scenario())


class FlakyStorage(MemoryStorage):
    """Raises an unexpected error on the next `failures` primary writes."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0
        self.primary_writes = 0

    def set(self, key, value):
        if key == SAVE_KEY:
            if self.failures:
                self.failures -= 1
                raise RuntimeError("disk controller reset")
            self.primary_writes += 1
        super().set(key, value)


def test_failing_step_does_not_stop_its_task(clock: ManualClock) -> None:
    storage = FlakyStorage()
    session = GameSession(storage, _fast_settings(), clock=clock)
    session.load()
    session.start_mining()
    storage.failures = 1
    writes_before = storage.primary_writes

    async def scenario() -> None:
        await session.start()
        await asyncio.sleep(0.15)
        assert storage.failures == 0
        assert storage.primary_writes >= writes_before + 2
        assert session.running
        await session.close()

    asyncio.run(scenario())
    assert session.state.points > 100


def test_undecodable_primary_file_recovers_from_backup(tmp_path, clock: ManualClock) -> None:
    storage = FileStorage(tmp_path)
    first = GameSession(storage, clock=clock)
    first.load()
    first.state.points = 4_242.0
    first.persistence.save_backup(first.state, clock.now_ms())
    storage.path_for(SAVE_KEY).write_bytes(b"\xff\xfe\x00garbage")

    second = GameSession(storage, clock=clock)
    assert second.load().source is LoadSource.BACKUP
    assert second.state.points == 4_242.0
