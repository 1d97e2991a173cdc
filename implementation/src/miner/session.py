"""One player's running game: load, reconcile, tick, persist, close.

All mutation happens on the event loop thread through the Simulation's
synchronous operations, so tick, purchase, claim and save never interleave.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from miner import events
from miner.achievements import AchievementBook, MilestoneTracker
from miner.clock import Clock, SystemClock
from miner.codec import export_save, export_save_encrypted, import_save
from miner.events import EventBus
from miner.offline import OfflineCredit, apply_credit, reconcile
from miner.save import LoadResult, PersistenceManager
from miner.settings import Settings
from miner.simulation import Simulation
from miner.storage import Storage
from miner.store import ResourceState
from miner.types import Boost, LoadSource, PurchaseResult, SaveStatus, UpgradeType
from miner.upgrades import UpgradeManager

logger = logging.getLogger(__name__)


class GameSession:
    def __init__(
        self,
        storage: Storage,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        user_id: Optional[str] = None,
        catalog: Optional[List[UpgradeType]] = None,
        boost_source: Optional[Callable[[], Sequence[Boost]]] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.clock = clock or SystemClock()
        self.events = bus or EventBus()
        self.persistence = PersistenceManager(storage, user_id, self.settings, self.events)
        self.upgrades = UpgradeManager(catalog)
        self.achievements = AchievementBook()
        self.milestones: Optional[MilestoneTracker] = None
        self.simulation: Optional[Simulation] = None
        self.load_source: Optional[LoadSource] = None
        self.upgrade_source: Optional[LoadSource] = None
        self.offline_credit: Optional[OfflineCredit] = None
        self._boost_source = boost_source
        self._tasks: List[asyncio.Task] = []

    @property
    def state(self) -> ResourceState:
        if self.simulation is None:
            raise RuntimeError("session not loaded")
        return self.simulation.state

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    # ── Load & reconcile ──────────────────────────────────────────────

    def load(self) -> LoadResult:
        now = self.clock.now_ms()
        self.upgrade_source = self.persistence.load_upgrades(self.upgrades)
        result = self.persistence.load(now)
        self.load_source = result.source
        state = result.state
        watermark = self.persistence.load_achievements(self.achievements)

        saved_rate = state.points_per_second
        kwargs = {}
        if self._boost_source is not None:
            kwargs["boost_source"] = self._boost_source
        self.simulation = Simulation(
            state=state,
            upgrade_manager=self.upgrades,
            settings=self.settings,
            events=self.events,
            **kwargs,
        )

        s = self.settings
        self.milestones = MilestoneTracker(
            s.milestones, s.milestone_window, s.milestone_mode,
            watermark=max(watermark, state.all_time_high_score),
        )
        self.milestones.check(state.points)
        self.simulation.achievements = self.achievements
        self.simulation.milestones = self.milestones

        credit = reconcile(
            state.last_save_time, now, state.is_mining, saved_rate, s,
            self.simulation.regen_per_second(), self.upgrades.offline_bonus(),
        )
        apply_credit(state, credit, now)
        self.offline_credit = credit
        state.roll_periods(now)
        if credit.has_rewards:
            self.events.emit(events.OFFLINE_REWARDS_AVAILABLE,
                             amount=state.unclaimed_offline_rewards, bonus=credit.bonus,
                             elapsed_ms=credit.credited_ms)

        logger.info("Session loaded from %s (upgrades from %s), points=%.2f, pps=%.2f",
                    result.source.value, self.upgrade_source.value, state.points, state.points_per_second)
        self.simulation.observe_changes(now)
        return result

    # ── Periodic tasks ────────────────────────────────────────────────

    async def start(self) -> None:
        if self.simulation is None:
            self.load()
        if self._tasks:
            return
        s = self.settings
        schedule = (
            ("mining", s.mining_tick_ms, self._mining_step),
            ("regen", s.regen_tick_ms, self._regen_step),
            ("autosave", s.autosave_interval_ms, self._autosave_step),
            ("backup", s.backup_interval_ms, self._backup_step),
            ("upgrade-backup", s.upgrade_backup_interval_ms, self._upgrade_backup_step),
        )
        for name, interval_ms, step in schedule:
            task = asyncio.create_task(self._every(interval_ms, step), name=f"miner-{name}")
            self._tasks.append(task)
        logger.debug("Started %d periodic tasks", len(self._tasks))

    async def _every(self, interval_ms: float, step: Callable[[float], object]) -> None:
        delay = interval_ms / 1000.0
        while True:
            await asyncio.sleep(delay)
            try:
                step(self.clock.now_ms())
            except Exception:
                logger.exception("Periodic step %s failed", getattr(step, "__name__", step))

    def _mining_step(self, now_ms: float) -> None:
        tick = self.simulation.mining_tick(now_ms)
        if tick.stopped:
            self.save()

    def _regen_step(self, now_ms: float) -> None:
        self.simulation.regen_tick(now_ms)

    def _autosave_step(self, now_ms: float) -> None:
        self.save()

    def _backup_step(self, now_ms: float) -> None:
        self.persistence.save_backup(self.state, now_ms)

    def _upgrade_backup_step(self, now_ms: float) -> None:
        self.persistence.save_upgrades_backup(self.upgrades, now_ms)

    async def close(self) -> None:
        """Cancel the periodic tasks, then flush a final save."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for task, result in zip(tasks, results):
            if isinstance(result, Exception):
                logger.error("Task %s failed: %r", task.get_name(), result)
        if self.simulation is not None:
            self.persistence.save_upgrades(self.upgrades)
            self.save()
        logger.info("Session closed")

    async def __aenter__(self) -> "GameSession":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── Player operations ─────────────────────────────────────────────

    def save(self) -> SaveStatus:
        now = self.clock.now_ms()
        status = self.persistence.save(self.state, now)
        self.persistence.save_achievements(self.achievements, self.milestones.watermark)
        return status

    def start_mining(self) -> bool:
        return self.simulation.start_mining(self.clock.now_ms())

    def stop_mining(self) -> SaveStatus:
        self.simulation.stop_mining(self.clock.now_ms())
        return self.save()

    def toggle_mining(self) -> bool:
        if self.state.is_mining:
            self.stop_mining()
            return False
        return self.start_mining()

    def purchase(self, upgrade_id: str) -> PurchaseResult:
        result = self.simulation.purchase(upgrade_id, self.clock.now_ms())
        if result.ok:
            self.persistence.save_upgrades(self.upgrades)
            self.save()
        return result

    def claim_offline_rewards(self) -> float:
        amount = self.simulation.claim_offline_rewards(self.clock.now_ms())
        if amount > 0.0:
            self.save()
        return amount

    # ── Portable saves ────────────────────────────────────────────────

    def export(self, encrypted: bool = False) -> str:
        if encrypted:
            return export_save_encrypted(self.state, self.upgrades.levels())
        return export_save(self.state, self.upgrades.levels())

    def import_text(self, text: str) -> ResourceState:
        """Replace the running state with an imported save and persist it.

        Raises ImportFormatError when the text cannot be decoded.
        """
        imported = import_save(text)
        now = self.clock.now_ms()
        self.upgrades.reset()
        self.upgrades.reconcile(imported.upgrades)
        self.simulation.state = imported.state
        self.simulation.refresh_derived()
        logger.info("Imported save (points=%.2f, upgrades=%d)",
                    self.state.points, self.upgrades.total_levels())
        self.persistence.save_upgrades(self.upgrades)
        self.save()
        self.simulation.observe_changes(now)
        return self.state


async def run_for(session: GameSession, seconds: float) -> None:
    """Run `session` for `seconds` of wall-clock time, then close it."""
    await session.start()
    try:
        await asyncio.sleep(seconds)
    finally:
        await session.close()
