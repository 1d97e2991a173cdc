from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from miner import events
from miner.achievements import AchievementBook, MilestoneTracker
from miner.events import EventBus
from miner.settings import Settings
from miner.store import ResourceState
from miner.types import Boost, PurchaseOutcome, PurchaseResult
from miner.upgrades import UpgradeManager

logger = logging.getLogger(__name__)

MINING_BOOST = "mining"


def _no_boosts() -> Sequence[Boost]:
    return ()


@dataclass
class MiningTick:
    earned: float = 0.0
    energy_cost: float = 0.0
    stopped: bool = False


@dataclass
class Simulation:
    """Mining progression state machine.

    Idle <-> Mining. Two tick kinds advance it independently:
    1. mining_tick: spend energy, emit points; forces Idle when energy runs short
    2. regen_tick: restore energy toward max_energy regardless of mining state
    Every operation is a short synchronous call; the caller serialises them.
    """
    state: ResourceState
    upgrade_manager: UpgradeManager = field(default_factory=UpgradeManager)
    settings: Settings = field(default_factory=Settings)
    events: EventBus = field(default_factory=EventBus)
    boost_source: Callable[[], Sequence[Boost]] = _no_boosts
    achievements: Optional[AchievementBook] = None
    milestones: Optional[MilestoneTracker] = None

    def __post_init__(self) -> None:
        self.refresh_derived()

    # ── Derived values ────────────────────────────────────────────────

    def refresh_derived(self) -> None:
        """Recompute rate, capacity and purchase count from upgrade levels."""
        um = self.upgrade_manager
        self.state.points_per_second = self.settings.base_points_per_second + um.rate_bonus()
        self.state.set_max_energy(self.settings.base_max_energy + um.capacity_bonus())
        self.state.upgrades_purchased = um.total_levels()

    def boost_multiplier(self, now_ms: float) -> float:
        """1 + active mining boosts, amplified by resonance upgrades."""
        base = 1.0
        for boost in self.boost_source():
            if boost.type == MINING_BOOST and boost.active(now_ms):
                base += boost.multiplier
        return base * (1.0 + self.upgrade_manager.resonance_bonus())

    def boosted_rate(self, now_ms: float) -> float:
        return self.state.points_per_second * self.boost_multiplier(now_ms)

    def energy_cost(self, now_ms: float) -> float:
        s = self.settings
        rate = self.state.points_per_second
        if rate > 0.0:
            speed = min(2.0, max(0.5, self.boosted_rate(now_ms) / rate))
        else:
            speed = 1.0
        efficiency = self.upgrade_manager.efficiency_bonus()
        return max(s.min_energy_cost, s.base_energy_cost * speed * (1.0 + efficiency))

    def regen_per_second(self) -> float:
        return self.settings.base_regen_per_second + self.upgrade_manager.regen_bonus()

    # ── Transitions ───────────────────────────────────────────────────

    def start_mining(self, now_ms: float) -> bool:
        if self.state.is_mining:
            return True
        if self.state.current_energy < self.settings.min_start_energy:
            return False
        self.state.is_mining = True
        logger.info("Mining started (energy=%.1f)", self.state.current_energy)
        self.events.emit(events.MINING_STARTED, auto=False)
        self.observe_changes(now_ms)
        return True

    def stop_mining(self, now_ms: float, reason: str = "user") -> None:
        if not self.state.is_mining:
            return
        self.state.is_mining = False
        logger.info("Mining stopped: %s (energy=%.2f)", reason, self.state.current_energy)
        self.events.emit(events.MINING_STOPPED, reason=reason)
        self.observe_changes(now_ms)

    def toggle_mining(self, now_ms: float) -> bool:
        if self.state.is_mining:
            self.stop_mining(now_ms)
            return False
        return self.start_mining(now_ms)

    def check_auto_mining(self, now_ms: float) -> bool:
        """Start mining unattended once energy covers several ticks of cost."""
        if self.state.is_mining or not self.upgrade_manager.has_auto_mining():
            return False
        threshold = self.energy_cost(now_ms) * self.settings.auto_mining_energy_ticks
        if self.state.current_energy < threshold:
            return False
        self.state.is_mining = True
        logger.info("Auto-mining started (energy=%.1f)", self.state.current_energy)
        self.events.emit(events.MINING_STARTED, auto=True)
        self.observe_changes(now_ms)
        return True

    # ── Ticks ─────────────────────────────────────────────────────────

    def mining_tick(self, now_ms: float) -> MiningTick:
        if not self.state.is_mining:
            return MiningTick()
        cost = self.energy_cost(now_ms)
        if self.state.current_energy < cost:
            self.stop_mining(now_ms, reason="energy")
            return MiningTick(energy_cost=cost, stopped=True)

        earned = self.boosted_rate(now_ms) * self.settings.mining_tick_seconds
        self.state.roll_periods(now_ms)
        self.state.earn(earned)
        self.state.set_energy(self.state.current_energy - cost)
        logger.debug("Mining tick: +%.2f points, -%.2f energy", earned, cost)
        self.observe_changes(now_ms)
        return MiningTick(earned=earned, energy_cost=cost)

    def regen_tick(self, now_ms: float) -> float:
        state = self.state
        before = state.current_energy
        if before < state.max_energy:
            state.set_energy(before + self.regen_per_second() * self.settings.regen_tick_seconds)
            state.last_energy_regen_time = now_ms
        self.check_auto_mining(now_ms)
        return state.current_energy - before

    # ── Purchases & claims ────────────────────────────────────────────

    def purchase(self, upgrade_id: str, now_ms: float) -> PurchaseResult:
        upgrade = self.upgrade_manager.get(upgrade_id)
        if upgrade is None:
            return PurchaseResult(PurchaseOutcome.UNKNOWN_UPGRADE, upgrade_id)
        if upgrade.maxed:
            return PurchaseResult(PurchaseOutcome.MAX_LEVEL_REACHED, upgrade_id, level=upgrade.level)
        cost = self.upgrade_manager.cost(upgrade_id)
        if self.state.points < cost:
            return PurchaseResult(PurchaseOutcome.INSUFFICIENT_FUNDS, upgrade_id, cost, upgrade.level)

        self.state.spend(cost)
        upgrade.level += 1
        self.refresh_derived()
        logger.info("Purchased %s level %d for %.0f", upgrade_id, upgrade.level, cost)
        self.events.emit(events.UPGRADE_PURCHASED, upgrade_id=upgrade_id, level=upgrade.level, cost=cost)
        self.observe_changes(now_ms)
        self.check_auto_mining(now_ms)
        return PurchaseResult(PurchaseOutcome.SUCCESS, upgrade_id, cost, upgrade.level)

    def claim_offline_rewards(self, now_ms: float) -> float:
        amount = self.state.unclaimed_offline_rewards
        if amount <= 0.0:
            return 0.0
        self.state.points += amount
        self.state.total_points_earned += amount
        self.state.total_offline_claimed += amount
        self.state.unclaimed_offline_rewards = 0.0
        self.state.last_offline_reward_time = now_ms
        logger.info("Offline rewards claimed: +%.2f points", amount)
        self.events.emit(events.OFFLINE_REWARDS_CLAIMED, amount=amount)
        self.observe_changes(now_ms)
        return amount

    # ── Observers ─────────────────────────────────────────────────────

    def observe_changes(self, now_ms: float) -> None:
        state = self.state
        if state.record_high_score() and not state.is_mining:
            self.events.emit(events.HIGH_SCORE, points=state.points)
        if self.achievements is not None:
            for achievement in self.achievements.evaluate(state, self.upgrade_manager, now_ms):
                self.events.emit(events.ACHIEVEMENT_UNLOCKED, achievement=achievement)
        if self.milestones is not None:
            for milestone in self.milestones.check(state.points):
                self.events.emit(events.MILESTONE_CROSSED, milestone=milestone, points=state.points)
