"""Offline reconciliation: what accrued between the last save and now.

Points are staged in unclaimed_offline_rewards for an explicit claim.
Energy is credited straight into the pool.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from miner.settings import Settings
from miner.store import ResourceState

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000.0


@dataclass(frozen=True)
class OfflineCredit:
    elapsed_ms: float = 0.0
    credited_ms: float = 0.0
    bonus: float = 0.0
    base_earnings: float = 0.0
    credited_earnings: float = 0.0
    energy: float = 0.0

    @property
    def has_rewards(self) -> bool:
        return self.credited_earnings > 0.0


def offline_bonus(elapsed_ms: float, settings: Settings, bonus_boost: float = 0.0) -> float:
    days = min(elapsed_ms / DAY_MS, settings.offline_cap_days)
    return min(days * settings.offline_bonus_per_day + bonus_boost, settings.offline_bonus_cap)


def reconcile(last_save_time: float, now_ms: float, was_mining: bool, points_per_second: float,
              settings: Settings, regen_per_second: float, bonus_boost: float = 0.0) -> OfflineCredit:
    elapsed = now_ms - last_save_time
    if elapsed <= 0.0:
        if elapsed < 0.0:
            logger.warning("Clock moved backwards by %.0f ms since last save", -elapsed)
        return OfflineCredit(elapsed_ms=elapsed)

    credited = min(elapsed, settings.offline_cap_ms)
    if credited < elapsed:
        logger.info("Offline time %.1f days clamped to %.0f days",
                    elapsed / DAY_MS, settings.offline_cap_days)
    energy = regen_per_second * credited / 1000.0

    if not was_mining or points_per_second <= 0.0:
        return OfflineCredit(elapsed_ms=elapsed, credited_ms=credited, energy=energy)

    bonus = offline_bonus(credited, settings, bonus_boost)
    base = points_per_second * credited / 1000.0
    return OfflineCredit(
        elapsed_ms=elapsed,
        credited_ms=credited,
        bonus=bonus,
        base_earnings=base,
        credited_earnings=base * (1.0 + bonus),
        energy=energy,
    )


def apply_credit(state: ResourceState, credit: OfflineCredit, now_ms: float) -> None:
    """Stage points, top up energy and advance the save timestamps."""
    if credit.has_rewards:
        state.unclaimed_offline_rewards += credit.credited_earnings
        state.offline_efficiency_bonus = credit.bonus
        logger.info("Offline rewards staged: %.2f points over %.1f h (bonus %.0f%%)",
                    credit.credited_earnings, credit.credited_ms / 3_600_000.0, credit.bonus * 100)
    if credit.energy > 0.0:
        state.set_energy(state.current_energy + credit.energy)
    if credit.elapsed_ms > 0.0:
        state.last_offline_time = state.last_save_time
    state.last_save_time = now_ms
    state.last_energy_regen_time = now_ms
