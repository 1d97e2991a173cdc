from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import List

logger = logging.getLogger(__name__)

SETTINGS_ENV = "DIVINE_MINER_SETTINGS"


def _repo_root() -> Path:
    here = Path(__file__).resolve()
    # .../implementation/src/miner/settings.py -> repo root is 3 levels up
    return here.parents[3]


def default_settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV)
    if override:
        return Path(override).resolve()
    return _repo_root() / "settings.json"


@dataclass
class Settings:
    # Tick cadence
    mining_tick_ms: int = 500
    regen_tick_ms: int = 500

    # Economy
    base_points_per_second: float = 1.0
    starting_points: float = 100.0
    base_energy_cost: float = 0.8
    min_energy_cost: float = 0.1
    base_regen_per_second: float = 1.0
    base_max_energy: float = 1000.0
    min_start_energy: float = 1.0
    auto_mining_energy_ticks: float = 10.0

    # Offline reconciliation
    offline_cap_days: float = 14.0
    offline_bonus_per_day: float = 0.10
    offline_bonus_cap: float = 1.40

    # Persistence cadence
    autosave_interval_ms: int = 30_000
    backup_interval_ms: int = 300_000
    upgrade_backup_interval_ms: int = 60_000
    save_dir: str = "saves"

    # Milestones: "window" fires while points sit in [m, m + window);
    # "watermark" fires once per milestone as soon as it is passed.
    milestones: List[float] = field(default_factory=lambda: [
        1_000, 10_000, 100_000, 1_000_000, 10_000_000, 100_000_000,
    ])
    milestone_window: float = 100.0
    milestone_mode: str = "window"

    log_level: str = "INFO"

    @property
    def mining_tick_seconds(self) -> float:
        return self.mining_tick_ms / 1000.0

    @property
    def regen_tick_seconds(self) -> float:
        return self.regen_tick_ms / 1000.0

    @property
    def offline_cap_ms(self) -> float:
        return self.offline_cap_days * 86_400_000.0


def load_settings(path: Path | None = None) -> Settings:
    if path is None:
        path = default_settings_path()
    if not path.exists():
        return Settings()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read settings %s: %s", path, e)
        return Settings()
    if not isinstance(data, dict):
        return Settings()
    known = {f.name for f in fields(Settings)}
    unknown = set(data) - known
    if unknown:
        logger.warning("Ignoring unknown settings: %s", ", ".join(sorted(unknown)))
    try:
        return Settings(**{k: v for k, v in data.items() if k in known})
    except TypeError:
        return Settings()


def save_settings(settings: Settings, path: Path | None = None) -> None:
    if path is None:
        path = default_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(asdict(settings), indent=2), encoding="utf-8")
