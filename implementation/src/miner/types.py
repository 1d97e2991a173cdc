from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class UpgradeCategory(str, Enum):
    EARLY = "early"
    MID = "mid"
    LATE = "late"
    ENDGAME = "endgame"
    LEGENDARY = "legendary"


class EffectFamily(str, Enum):
    """Which derived quantity an upgrade's effect_value feeds."""
    RATE = "rate"              # points per second
    EFFICIENCY = "efficiency"  # energy cost per tick (negative values)
    REGEN = "regen"            # energy per second
    CAPACITY = "capacity"      # max energy
    RESONANCE = "resonance"    # boost effectiveness
    OFFLINE = "offline"        # offline bonus
    AUTOMATION = "automation"  # auto-mining


class UnlockKind(str, Enum):
    POINTS = "points"
    UPGRADES = "upgrades"


@dataclass(frozen=True)
class UnlockRequirement:
    kind: UnlockKind
    threshold: float


@dataclass(frozen=True)
class UpgradeType:
    """Static catalog entry. Owned progress lives in Upgrade."""
    id: str
    name: str
    effect: str
    base_cost: float
    cost_multiplier: float
    effect_value: float
    max_level: int
    category: UpgradeCategory
    family: EffectFamily
    unlock: Optional[UnlockRequirement] = None


@dataclass(frozen=True)
class Boost:
    """Externally managed temporary multiplier (e.g. from a daily reward)."""
    type: str
    multiplier: float
    expiry: float  # epoch ms

    def active(self, now_ms: float) -> bool:
        return self.expiry > now_ms


class PurchaseOutcome(str, Enum):
    SUCCESS = "success"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    MAX_LEVEL_REACHED = "max_level_reached"
    UNKNOWN_UPGRADE = "unknown_upgrade"


@dataclass(frozen=True)
class PurchaseResult:
    outcome: PurchaseOutcome
    upgrade_id: str
    cost: float = 0.0
    level: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome is PurchaseOutcome.SUCCESS


class SaveStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    PENDING = "pending"


class LoadSource(str, Enum):
    """Where the loaded state came from in the recovery chain."""
    PRIMARY = "primary"
    BACKUP = "backup"
    MIRROR = "mirror"
    DEFAULTS = "defaults"
