"""Achievements and milestone notifications.

Achievements are one-way flags: a predicate over the resource state and the
owned upgrade levels that, once true, stays unlocked with a timestamp.
Milestones are point thresholds announced when the balance reaches them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from miner.store import ResourceState
from miner.upgrades import UpgradeManager

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000


@dataclass(frozen=True)
class AchievementContext:
    state: ResourceState
    upgrades: UpgradeManager
    now_ms: float

    def level_effect(self, *upgrade_ids: str) -> float:
        """Summed effect_value * level of the named upgrades."""
        total = 0.0
        for upgrade_id in upgrade_ids:
            upgrade = self.upgrades.get(upgrade_id)
            if upgrade is not None:
                total += upgrade.type.effect_value * upgrade.level
        return total

    def level_of(self, upgrade_id: str) -> int:
        upgrade = self.upgrades.get(upgrade_id)
        return upgrade.level if upgrade is not None else 0


Condition = Callable[[AchievementContext], bool]


@dataclass
class Achievement:
    id: str
    name: str
    description: str
    condition: Condition
    unlocked: bool = False
    unlocked_at: Optional[float] = None


def _points_at_least(value: float) -> Condition:
    return lambda ctx: ctx.state.points >= value


def _rate_at_least(value: float) -> Condition:
    return lambda ctx: ctx.state.points_per_second >= value


def _purchases_at_least(value: int) -> Condition:
    return lambda ctx: ctx.state.upgrades_purchased >= value


def _max_energy_at_least(value: float) -> Condition:
    return lambda ctx: ctx.state.max_energy >= value


def _cost_reduction(value: float, *upgrade_ids: str) -> Condition:
    return lambda ctx: ctx.level_effect(*upgrade_ids) <= -value


def _regen_at_least(value: float) -> Condition:
    return lambda ctx: 1.0 + ctx.level_effect("energy-regen") >= value


def default_achievements() -> List[Achievement]:
    A = Achievement
    return [
        A("first-mining", "First Mining", "Start mining for the first time",
          lambda ctx: ctx.state.total_points_earned > 0),
        A("first-upgrade", "First Upgrade", "Purchase your first upgrade", _purchases_at_least(1)),
        A("speed-demon", "Speed Demon", "Reach 10 points per second", _rate_at_least(10)),
        A("millionaire", "Millionaire", "Earn 1,000,000 total points",
          lambda ctx: ctx.state.total_points_earned >= 1_000_000),
        A("upgrade-master", "Upgrade Master", "Purchase 50 upgrades", _purchases_at_least(50)),
        A("persistent-miner", "Persistent Miner", "Mine for 24 hours total",
          lambda ctx: ctx.now_ms - ctx.state.session_start_time >= DAY_MS),
        A("high-scorer", "High Scorer", "Reach 10,000 points", _points_at_least(10_000)),
        A("legendary-miner", "Legendary Miner", "Reach 100,000 points", _points_at_least(100_000)),
        A("cosmic-explorer", "Cosmic Explorer", "Reach 1,000,000 points", _points_at_least(1_000_000)),
        A("stellar-legend", "Stellar Legend", "Reach 10,000,000 points", _points_at_least(10_000_000)),
        A("galactic-master", "Galactic Master", "Reach 100,000,000 points", _points_at_least(100_000_000)),
        A("speed-master", "Speed Master", "Reach 100 points per second", _rate_at_least(100)),
        A("upgrade-legend", "Upgrade Legend", "Purchase 100 upgrades", _purchases_at_least(100)),
        A("energy-master", "Energy Master", "Reach 10,000 max energy", _max_energy_at_least(10_000)),
        A("efficiency-expert", "Efficiency Expert", "Reduce energy cost by 50%",
          _cost_reduction(0.5, "energy-efficiency")),
        A("regen-master", "Regeneration Master", "Reach 5 energy per second regeneration",
          _regen_at_least(5)),
        A("offline-master", "Offline Master", "Earn 1,000,000 points while offline",
          lambda ctx: ctx.state.total_offline_claimed >= 1_000_000),
        A("energy-sustainer", "Energy Sustainer", "Reduce energy cost by 80%",
          _cost_reduction(0.8, "energy-efficiency", "energy-sustain")),
        A("divine-resonator", "Divine Resonator", "Max out Divine Resonance upgrade",
          lambda ctx: ctx.level_of("divine-resonance") >= 5),
        A("offline-collector", "Offline Collector", "Claim offline rewards for the first time",
          lambda ctx: ctx.state.total_offline_claimed > 0),
        A("reward-master", "Reward Master", "Claim 100,000 total offline rewards",
          lambda ctx: ctx.state.total_offline_claimed >= 100_000),
        A("energy-conservationist", "Energy Conservationist", "Reduce energy cost by 60%",
          _cost_reduction(0.6, "energy-efficiency", "energy-sustain", "energy-mastery")),
        A("energy-titan", "Energy Titan", "Reach 50,000 max energy", _max_energy_at_least(50_000)),
        A("regeneration-master", "Regeneration Master", "Reach 10 energy per second regeneration",
          _regen_at_least(10)),
        A("energy-mastery", "Energy Mastery", "Reduce energy cost by 90%",
          _cost_reduction(0.9, "energy-efficiency", "energy-sustain", "energy-mastery")),
        A("divine-master", "Divine Master", "Reach 1,000,000,000 points", _points_at_least(1_000_000_000)),
    ]


class AchievementBook:
    """Evaluates achievement predicates; unlocks are permanent."""

    def __init__(self, achievements: Optional[Sequence[Achievement]] = None) -> None:
        if achievements is None:
            achievements = default_achievements()
        self.achievements: List[Achievement] = list(achievements)
        self._by_id: Dict[str, Achievement] = {a.id: a for a in self.achievements}

    def get(self, achievement_id: str) -> Optional[Achievement]:
        return self._by_id.get(achievement_id)

    def __iter__(self):
        return iter(self.achievements)

    def __len__(self) -> int:
        return len(self.achievements)

    def unlocked(self) -> List[Achievement]:
        return [a for a in self.achievements if a.unlocked]

    def evaluate(self, state: ResourceState, upgrades: UpgradeManager, now_ms: float) -> List[Achievement]:
        """Unlock every achievement whose predicate now holds; return only the new ones."""
        ctx = AchievementContext(state, upgrades, now_ms)
        fresh = []
        for achievement in self.achievements:
            if achievement.unlocked:
                continue
            if achievement.condition(ctx):
                achievement.unlocked = True
                achievement.unlocked_at = now_ms
                logger.info("Achievement unlocked: %s", achievement.id)
                fresh.append(achievement)
        return fresh

    # ── Persistence support ───────────────────────────────────────────

    def to_records(self) -> List[dict]:
        return [
            {"id": a.id, "unlocked": a.unlocked, "unlocked_at": a.unlocked_at}
            for a in self.achievements
        ]

    def merge(self, records: Iterable[Mapping]) -> int:
        """Apply saved unlock flags by id. Never relocks; unknown ids are ignored."""
        restored = 0
        for record in records:
            if not isinstance(record, Mapping):
                continue
            achievement = self._by_id.get(record.get("id"))
            if achievement is None or record.get("unlocked") is not True:
                continue
            if not achievement.unlocked:
                achievement.unlocked = True
                at = record.get("unlocked_at")
                achievement.unlocked_at = float(at) if isinstance(at, (int, float)) else None
                restored += 1
        return restored


class MilestoneTracker:
    """Announces point milestones.

    window:    fires when points enter [m, m + window); a jump past the whole
               window is never announced. Re-arms once points leave the window.
    watermark: fires once for every milestone at or below the highest balance
               seen, including ones skipped over in a single step.
    """

    MODES = ("window", "watermark")

    def __init__(self, milestones: Sequence[float], window: float = 100.0,
                 mode: str = "window", watermark: float = 0.0) -> None:
        if mode not in self.MODES:
            raise ValueError(f"unknown milestone mode {mode!r}")
        self.milestones = sorted(float(m) for m in milestones)
        self.window = float(window)
        self.mode = mode
        self.watermark = float(watermark)
        self._inside: set = set()

    def check(self, points: float) -> List[float]:
        if self.mode == "watermark":
            return self._check_watermark(points)
        return self._check_window(points)

    def _check_window(self, points: float) -> List[float]:
        crossed = []
        for milestone in self.milestones:
            if milestone <= points < milestone + self.window:
                if milestone not in self._inside:
                    self._inside.add(milestone)
                    crossed.append(milestone)
            else:
                self._inside.discard(milestone)
        return crossed

    def _check_watermark(self, points: float) -> List[float]:
        crossed = [m for m in self.milestones if self.watermark < m <= points]
        if points > self.watermark:
            self.watermark = points
        return crossed
