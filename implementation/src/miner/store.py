from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

GAME_VERSION = "1.1.0"


def _date_key(now_ms: float) -> str:
    return datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).date().isoformat()


def _week_key(now_ms: float) -> str:
    year, week, _ = datetime.fromtimestamp(now_ms / 1000.0, tz=timezone.utc).isocalendar()
    return f"{year}-W{week:02d}"


@dataclass
class ResourceState:
    points: float = 100.0
    total_points_earned: float = 0.0
    points_per_second: float = 1.0
    is_mining: bool = False

    current_energy: float = 1000.0
    max_energy: float = 1000.0

    last_save_time: float = 0.0
    last_energy_regen_time: float = 0.0
    session_start_time: float = 0.0
    last_offline_reward_time: float = 0.0
    last_offline_time: float = 0.0

    unclaimed_offline_rewards: float = 0.0
    offline_efficiency_bonus: float = 0.0
    total_offline_claimed: float = 0.0

    high_score: float = 100.0
    all_time_high_score: float = 100.0

    upgrades_purchased: int = 0
    miners_active: int = 1
    total_earned_24h: float = 0.0
    total_earned_7d: float = 0.0
    last_daily_reset: str = ""
    last_weekly_reset: str = ""

    version: str = GAME_VERSION

    @classmethod
    def fresh(cls, now_ms: float, starting_points: float = 100.0,
              max_energy: float = 1000.0, base_rate: float = 1.0) -> "ResourceState":
        return cls(
            points=starting_points,
            points_per_second=base_rate,
            current_energy=max_energy,
            max_energy=max_energy,
            last_save_time=now_ms,
            last_energy_regen_time=now_ms,
            session_start_time=now_ms,
            last_offline_reward_time=now_ms,
            last_offline_time=now_ms,
            high_score=starting_points,
            all_time_high_score=starting_points,
            last_daily_reset=_date_key(now_ms),
            last_weekly_reset=_week_key(now_ms),
        )

    def earn(self, amount: float) -> None:
        """Credit realised mining earnings to points and every earned counter."""
        if amount <= 0.0:
            return
        self.points += amount
        self.total_points_earned += amount
        self.total_earned_24h += amount
        self.total_earned_7d += amount

    def spend(self, amount: float) -> None:
        self.points = max(0.0, self.points - amount)

    def record_high_score(self) -> bool:
        if self.points <= self.high_score:
            return False
        self.high_score = self.points
        self.all_time_high_score = max(self.all_time_high_score, self.points)
        return True

    def set_energy(self, value: float) -> None:
        self.current_energy = max(0.0, min(self.max_energy, value))

    def set_max_energy(self, value: float) -> None:
        """Raising capacity keeps current energy; lowering it clamps down."""
        self.max_energy = max(0.0, value)
        if self.current_energy > self.max_energy:
            self.current_energy = self.max_energy

    def roll_periods(self, now_ms: float) -> None:
        today = _date_key(now_ms)
        if self.last_daily_reset != today:
            self.total_earned_24h = 0.0
            self.last_daily_reset = today
        week = _week_key(now_ms)
        if self.last_weekly_reset != week:
            self.total_earned_7d = 0.0
            self.last_weekly_reset = week
