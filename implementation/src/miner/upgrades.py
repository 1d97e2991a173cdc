"""Upgrade catalog loading, purchase pricing and effect aggregation.

Cost curve:
    adjusted = cost_multiplier
    level >= 5:  adjusted *= max(0.7, 1 - 0.03 * (level - 4))
    level >= 15: adjusted *= max(0.5, 1 - 0.05 * (level - 14))
    cost = min(floor(base_cost * adjusted ** level), 500 * base_cost)

Effects are additive per family: sum(effect_value * level) over owned upgrades.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from miner.types import (
    EffectFamily,
    UnlockKind,
    UnlockRequirement,
    UpgradeCategory,
    UpgradeType,
)

logger = logging.getLogger(__name__)

FIRST_BREAKPOINT = 5
SECOND_BREAKPOINT = 15
COST_CAP_FACTOR = 500.0
EFFICIENCY_FLOOR = -0.95

AUTO_MINING_ID = "auto-mining"


def default_catalog_path() -> Path:
    return Path(__file__).resolve().parent / "upgrade_data.json"


def load_catalog(path: Optional[Path] = None) -> List[UpgradeType]:
    if path is None:
        path = default_catalog_path()
    raw = json.loads(path.read_text(encoding="utf-8"))
    catalog = []
    for entry in raw.get("upgrades", []):
        unlock = None
        if entry.get("unlock"):
            unlock = UnlockRequirement(
                kind=UnlockKind(entry["unlock"]["kind"]),
                threshold=float(entry["unlock"]["threshold"]),
            )
        catalog.append(UpgradeType(
            id=entry["id"],
            name=entry["name"],
            effect=entry.get("effect", ""),
            base_cost=float(entry["base_cost"]),
            cost_multiplier=float(entry["cost_multiplier"]),
            effect_value=float(entry["effect_value"]),
            max_level=int(entry["max_level"]),
            category=UpgradeCategory(entry["category"]),
            family=EffectFamily(entry["family"]),
            unlock=unlock,
        ))
    return catalog


@dataclass
class Upgrade:
    """A catalog entry plus the player's owned level."""
    type: UpgradeType
    level: int = 0

    @property
    def id(self) -> str:
        return self.type.id

    @property
    def max_level(self) -> int:
        return self.type.max_level

    @property
    def maxed(self) -> bool:
        return self.level >= self.type.max_level


def purchase_cost(upgrade_type: UpgradeType, level: int) -> float:
    """Price of buying the next level when `level` levels are already owned."""
    adjusted = upgrade_type.cost_multiplier
    if level >= FIRST_BREAKPOINT:
        over = level - (FIRST_BREAKPOINT - 1)
        adjusted *= max(0.7, 1.0 - over * 0.03)
    if level >= SECOND_BREAKPOINT:
        over = level - (SECOND_BREAKPOINT - 1)
        adjusted *= max(0.5, 1.0 - over * 0.05)
    cost = math.floor(upgrade_type.base_cost * adjusted ** level)
    return min(float(cost), upgrade_type.base_cost * COST_CAP_FACTOR)


def aggregate_effect(upgrades: Iterable[Upgrade], predicate: Callable[[Upgrade], bool]) -> float:
    total = 0.0
    for upgrade in upgrades:
        if upgrade.level > 0 and predicate(upgrade):
            total += upgrade.type.effect_value * upgrade.level
    return total


def family_is(family: EffectFamily) -> Callable[[Upgrade], bool]:
    return lambda upgrade: upgrade.type.family is family


class UpgradeManager:
    """Owns the upgrade list for one session and derives every effect total."""

    def __init__(self, catalog: Optional[List[UpgradeType]] = None) -> None:
        if catalog is None:
            catalog = load_catalog()
        self.catalog = list(catalog)
        self.upgrades: List[Upgrade] = [Upgrade(t) for t in self.catalog]
        self._by_id: Dict[str, Upgrade] = {u.id: u for u in self.upgrades}

    def get(self, upgrade_id: str) -> Optional[Upgrade]:
        return self._by_id.get(upgrade_id)

    def __iter__(self):
        return iter(self.upgrades)

    def __len__(self) -> int:
        return len(self.upgrades)

    # ── Effect totals ─────────────────────────────────────────────────

    def family_total(self, family: EffectFamily) -> float:
        return aggregate_effect(self.upgrades, family_is(family))

    def rate_bonus(self) -> float:
        return self.family_total(EffectFamily.RATE)

    def efficiency_bonus(self) -> float:
        """Summed energy-cost reduction, never below -0.95."""
        return max(EFFICIENCY_FLOOR, self.family_total(EffectFamily.EFFICIENCY))

    def regen_bonus(self) -> float:
        return self.family_total(EffectFamily.REGEN)

    def capacity_bonus(self) -> float:
        return self.family_total(EffectFamily.CAPACITY)

    def resonance_bonus(self) -> float:
        return self.family_total(EffectFamily.RESONANCE)

    def offline_bonus(self) -> float:
        return self.family_total(EffectFamily.OFFLINE)

    def has_auto_mining(self) -> bool:
        upgrade = self.get(AUTO_MINING_ID)
        return upgrade is not None and upgrade.level > 0

    def total_levels(self) -> int:
        return sum(u.level for u in self.upgrades)

    # ── Purchase support ──────────────────────────────────────────────

    def cost(self, upgrade_id: str) -> float:
        upgrade = self._by_id[upgrade_id]
        return purchase_cost(upgrade.type, upgrade.level)

    def is_unlocked(self, upgrade_id: str, points: float) -> bool:
        upgrade = self._by_id[upgrade_id]
        req = upgrade.type.unlock
        if req is None:
            return True
        if req.kind is UnlockKind.POINTS:
            return points >= req.threshold
        return self.total_levels() >= req.threshold

    def recommended(self, points: float) -> List[Upgrade]:
        """Affordable-soon upgrades for the player's progress band, best value first."""
        if points < 1_000:
            allowed = {UpgradeCategory.EARLY}
        elif points < 10_000:
            allowed = {UpgradeCategory.EARLY, UpgradeCategory.MID}
        elif points < 100_000:
            allowed = {UpgradeCategory.MID, UpgradeCategory.LATE}
        elif points < 1_000_000:
            allowed = set(UpgradeCategory) - {UpgradeCategory.LEGENDARY}
        else:
            allowed = set(UpgradeCategory)

        picks = []
        for upgrade in self.upgrades:
            if upgrade.maxed or upgrade.type.category not in allowed:
                continue
            if points >= self.cost(upgrade.id) * 0.5:
                picks.append(upgrade)
        picks.sort(key=lambda u: self.cost(u.id) / abs(u.type.effect_value))
        return picks

    # ── Persistence support ───────────────────────────────────────────

    def levels(self) -> List[dict]:
        return [{"id": u.id, "level": u.level} for u in self.upgrades]

    def reset(self) -> None:
        for upgrade in self.upgrades:
            upgrade.level = 0

    def reconcile(self, saved: Iterable[Mapping]) -> int:
        """Apply saved levels by id. Unknown ids are dropped, missing ids keep level 0.

        Returns the number of entries matched against the catalog.
        """
        matched = 0
        for entry in saved:
            if not isinstance(entry, Mapping):
                continue
            upgrade = self._by_id.get(entry.get("id"))
            if upgrade is None:
                logger.info("Dropping unknown upgrade id %r from save", entry.get("id"))
                continue
            level = entry.get("level")
            if isinstance(level, bool) or not isinstance(level, (int, float)):
                logger.warning("Upgrade %s has invalid level %r, keeping %d", upgrade.id, level, upgrade.level)
                continue
            upgrade.level = max(0, min(upgrade.max_level, int(level)))
            matched += 1
        return matched
