"""Upgrade catalog, cost curve and effect aggregation."""
from __future__ import annotations

import math

import pytest

from miner.types import EffectFamily, UpgradeCategory, UpgradeType
from miner.upgrades import (
    COST_CAP_FACTOR,
    Upgrade,
    UpgradeManager,
    aggregate_effect,
    family_is,
    load_catalog,
    purchase_cost,
)


def _type(base: float = 100.0, mult: float = 2.0, max_level: int = 50) -> UpgradeType:
    return UpgradeType(
        id="probe", name="PROBE", effect="", base_cost=base, cost_multiplier=mult,
        effect_value=1.0, max_level=max_level, category=UpgradeCategory.EARLY,
        family=EffectFamily.RATE,
    )


def test_catalog_loads_every_entry() -> None:
    catalog = load_catalog()
    ids = [t.id for t in catalog]
    assert len(catalog) == 24
    assert len(set(ids)) == len(ids)
    assert "mining-speed" in ids and "auto-mining" in ids
    for t in catalog:
        assert t.base_cost > 0
        assert t.cost_multiplier > 1
        assert t.max_level >= 1


@pytest.mark.parametrize("level, expected", [
    (0, 100),
    (1, 200),
    (4, 1600),
    (5, 2747),
    (6, 4415),
    (9, 11858),
])
def test_purchase_cost_table(level: int, expected: float) -> None:
    assert purchase_cost(_type(), level) == expected


def test_no_discount_before_first_breakpoint() -> None:
    t = _type()
    for level in range(5):
        assert purchase_cost(t, level) == math.floor(100 * 2.0 ** level)


def test_second_breakpoint_engages_at_fifteen() -> None:
    t = _type(base=100.0, mult=2.0)
    # first factor has hit its 0.7 floor by level 15; second factor is 0.95
    assert purchase_cost(t, 15) == pytest.approx(100 * 1.33 ** 15, abs=1.0)
    assert purchase_cost(t, 15) < purchase_cost(t, 14)


def test_cost_is_capped() -> None:
    t = _type(base=10.0, mult=3.0, max_level=30)
    assert purchase_cost(t, 4) == 810
    assert purchase_cost(t, 8) == 5000


def test_catalog_costs_never_exceed_cap() -> None:
    for t in load_catalog():
        for level in range(t.max_level + 1):
            assert purchase_cost(t, level) <= t.base_cost * COST_CAP_FACTOR


def test_mining_speed_costs() -> None:
    manager = UpgradeManager()
    assert manager.cost("mining-speed") == 25
    manager.get("mining-speed").level = 1
    assert manager.cost("mining-speed") == 28


def test_aggregate_effect_by_family() -> None:
    manager = UpgradeManager()
    manager.get("mining-speed").level = 4
    manager.get("auto-miner").level = 2
    manager.get("energy-regen").level = 3
    assert manager.rate_bonus() == pytest.approx(4 * 0.5 + 2 * 1.0)
    assert manager.regen_bonus() == pytest.approx(2.4)
    assert aggregate_effect(manager.upgrades, family_is(EffectFamily.CAPACITY)) == 0.0


def test_efficiency_bonus_clamped() -> None:
    manager = UpgradeManager()
    for upgrade_id in ("energy-efficiency", "energy-optimization", "energy-sustain", "energy-mastery"):
        upgrade = manager.get(upgrade_id)
        upgrade.level = upgrade.max_level
    assert manager.family_total(EffectFamily.EFFICIENCY) < -0.95
    assert manager.efficiency_bonus() == pytest.approx(-0.95)


def test_capacity_includes_all_capacity_upgrades() -> None:
    manager = UpgradeManager()
    manager.get("mining-capacity").level = 2
    manager.get("energy-capacity").level = 1
    manager.get("stellar-overflow").level = 1
    assert manager.capacity_bonus() == pytest.approx(100 + 1000 + 10000)


def test_auto_mining_flag() -> None:
    manager = UpgradeManager()
    assert not manager.has_auto_mining()
    manager.get("auto-mining").level = 1
    assert manager.has_auto_mining()


def test_reconcile_by_id() -> None:
    manager = UpgradeManager()
    matched = manager.reconcile([
        {"id": "mining-speed", "level": 3},
        {"id": "auto-mining", "level": 7},
        {"id": "retired-upgrade", "level": 5},
        {"id": "energy-regen", "level": "lots"},
        "garbage",
    ])
    assert matched == 2
    assert manager.get("mining-speed").level == 3
    assert manager.get("auto-mining").level == 1
    assert manager.get("energy-regen").level == 0
    assert manager.get("retired-upgrade") is None


def test_levels_and_reset() -> None:
    manager = UpgradeManager()
    manager.get("divine-boost").level = 2
    levels = {entry["id"]: entry["level"] for entry in manager.levels()}
    assert levels["divine-boost"] == 2
    assert manager.total_levels() == 2
    manager.reset()
    assert manager.total_levels() == 0


def test_unlock_requirements() -> None:
    manager = UpgradeManager()
    assert manager.is_unlocked("mining-speed", 0)
    assert not manager.is_unlocked("divine-boost", 999)
    assert manager.is_unlocked("divine-boost", 1000)
    assert not manager.is_unlocked("auto-miner", 1_000_000)
    manager.get("mining-speed").level = 2
    assert manager.is_unlocked("auto-miner", 0)


def test_recommended_respects_band_and_affordability() -> None:
    manager = UpgradeManager()
    picks = manager.recommended(100)
    assert picks
    assert all(u.type.category is UpgradeCategory.EARLY for u in picks)
    assert all(100 >= manager.cost(u.id) * 0.5 for u in picks)
    ratios = [manager.cost(u.id) / abs(u.type.effect_value) for u in picks]
    assert ratios == sorted(ratios)


def test_recommended_skips_maxed() -> None:
    manager = UpgradeManager()
    speed = manager.get("mining-speed")
    speed.level = speed.max_level
    assert speed not in manager.recommended(500)


def test_upgrade_maxed_property() -> None:
    upgrade = Upgrade(_type(max_level=2), level=2)
    assert upgrade.maxed
