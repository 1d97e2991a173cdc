"""Persistence and recovery for one player's progress.

Storage layout (every key suffixed with _<user id> when a user id is set):
    divineMiningGame               primary save record (verified by read-back)
    divineMiningGame_backup        rolling backup record
    divineMiningHighScore          all-time high score mirror
    divineMiningPoints             points mirror
    divineMiningTotalEarned        lifetime earned mirror
    divineMiningSession            session timestamps and period keys
    divineMiningUpgrades           owned upgrade levels
    divineMiningUpgrades_backup    upgrade levels with timestamp and version
    divineMiningEnergyUpgrades     energy-family levels only
    divineMiningAchievements       unlock flags and milestone watermark

Load order for the record: primary -> backup -> scalar mirrors -> defaults.
Load order for upgrades: primary -> backup -> energy channel -> catalog defaults.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from typing import Dict, Optional

from miner import events
from miner.achievements import AchievementBook
from miner.codec import dumps_state, loads_state
from miner.errors import SaveValidationError, SaveVerificationError, StorageError
from miner.events import EventBus
from miner.settings import Settings
from miner.storage import Storage, namespaced
from miner.store import GAME_VERSION, ResourceState
from miner.types import LoadSource, SaveStatus
from miner.upgrades import UpgradeManager

logger = logging.getLogger(__name__)

SAVE_KEY = "divineMiningGame"
BACKUP_KEY = "divineMiningGame_backup"
HIGH_SCORE_KEY = "divineMiningHighScore"
POINTS_KEY = "divineMiningPoints"
TOTAL_EARNED_KEY = "divineMiningTotalEarned"
SESSION_KEY = "divineMiningSession"
UPGRADES_KEY = "divineMiningUpgrades"
UPGRADES_BACKUP_KEY = "divineMiningUpgrades_backup"
ENERGY_UPGRADES_KEY = "divineMiningEnergyUpgrades"
ACHIEVEMENTS_KEY = "divineMiningAchievements"

SESSION_FIELDS = ("session_start_time", "last_daily_reset", "last_weekly_reset", "last_save_time", "version")


@dataclass
class LoadResult:
    state: ResourceState
    source: LoadSource


class PersistenceManager:
    """Reads and writes every persisted document for one user namespace."""

    def __init__(self, storage: Storage, user_id: Optional[str] = None,
                 settings: Optional[Settings] = None, events: Optional[EventBus] = None) -> None:
        self.storage = storage
        self.user_id = user_id
        self.settings = settings or Settings()
        self.events = events or EventBus()
        self.status = SaveStatus.PENDING
        self.last_error: Optional[str] = None

    def key(self, base: str) -> str:
        return namespaced(base, self.user_id)

    # ── Low-level helpers ─────────────────────────────────────────────

    def _write_verified(self, key: str, text: str) -> None:
        self.storage.set(key, text)
        if self.storage.get(key) != text:
            raise SaveVerificationError(key)

    def _read(self, key: str) -> Optional[str]:
        try:
            return self.storage.get(key)
        except StorageError as e:
            logger.warning("Could not read %s: %s", key, e)
            return None

    def _read_json(self, key: str):
        text = self._read(key)
        if text is None:
            return None
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("Corrupt JSON in %s: %s", key, e)
            return None

    def _read_number(self, key: str) -> Optional[float]:
        text = self._read(key)
        if text is None:
            return None
        try:
            return float(text)
        except ValueError:
            logger.warning("Mirror %s holds a non-number: %r", key, text)
            return None

    def _set_status(self, status: SaveStatus, error: Optional[str] = None) -> None:
        self.status = status
        self.last_error = error
        self.events.emit(events.SAVE_STATUS, status=status, error=error)

    # ── Save record ───────────────────────────────────────────────────

    def save(self, state: ResourceState, now_ms: float) -> SaveStatus:
        """Write the primary record plus scalar mirrors; report the outcome."""
        state.last_save_time = now_ms
        state.version = GAME_VERSION
        key = self.key(SAVE_KEY)
        try:
            self._write_verified(key, dumps_state(state))
        except (StorageError, SaveVerificationError) as e:
            logger.error("Error saving game: %s", e)
            self._set_status(SaveStatus.ERROR, str(e))
            return self.status
        try:
            self._write_mirrors(state)
        except StorageError as e:
            logger.warning("Could not update save mirrors: %s", e)
        logger.debug("Saved %s (points=%.2f)", key, state.points)
        self._set_status(SaveStatus.SUCCESS)
        return self.status

    def save_backup(self, state: ResourceState, now_ms: float) -> bool:
        state.last_save_time = now_ms
        key = self.key(BACKUP_KEY)
        try:
            self._write_verified(key, dumps_state(state))
        except (StorageError, SaveVerificationError) as e:
            logger.error("Error writing backup: %s", e)
            return False
        logger.debug("Backup written to %s", key)
        return True

    def _write_mirrors(self, state: ResourceState) -> None:
        self.storage.set(self.key(HIGH_SCORE_KEY), repr(float(state.all_time_high_score)))
        self.storage.set(self.key(POINTS_KEY), repr(float(state.points)))
        self.storage.set(self.key(TOTAL_EARNED_KEY), repr(float(state.total_points_earned)))
        session = {name: getattr(state, name) for name in SESSION_FIELDS}
        self.storage.set(self.key(SESSION_KEY), json.dumps(session, sort_keys=True))

    def read_mirrors(self) -> Dict[str, float]:
        mirrors = {}
        for name, base in (("high_score", HIGH_SCORE_KEY), ("points", POINTS_KEY),
                           ("total_earned", TOTAL_EARNED_KEY)):
            value = self._read_number(self.key(base))
            if value is not None and math.isfinite(value) and value >= 0:
                mirrors[name] = value
        return mirrors

    def _read_slot(self, base: str) -> Optional[ResourceState]:
        key = self.key(base)
        text = self._read(key)
        if text is None:
            return None
        try:
            return loads_state(text)
        except SaveValidationError as e:
            logger.warning("Rejected save in %s: %s", key, e)
            return None

    def load(self, now_ms: float) -> LoadResult:
        mirrors = self.read_mirrors()

        state = self._read_slot(SAVE_KEY)
        if state is not None:
            _merge_mirrors(state, mirrors)
            logger.info("Loaded primary save (points=%.2f)", state.points)
            return LoadResult(state, LoadSource.PRIMARY)

        state = self._read_slot(BACKUP_KEY)
        if state is not None:
            _merge_mirrors(state, mirrors)
            logger.info("Recovered from backup save (points=%.2f)", state.points)
            self.events.emit(events.RECOVERED_FROM_BACKUP, source=LoadSource.BACKUP)
            return LoadResult(state, LoadSource.BACKUP)

        s = self.settings
        state = ResourceState.fresh(now_ms, s.starting_points, s.base_max_energy, s.base_points_per_second)
        if not mirrors:
            logger.info("No save found, starting fresh")
            return LoadResult(state, LoadSource.DEFAULTS)

        state.points = max(s.starting_points, mirrors.get("points", 0.0))
        state.total_points_earned = mirrors.get("total_earned", 0.0)
        best = max(state.points, mirrors.get("high_score", 0.0))
        state.high_score = best
        state.all_time_high_score = best
        self._apply_session(state)
        logger.info("Rebuilt state from scalar mirrors (points=%.2f)", state.points)
        self.events.emit(events.RECOVERED_FROM_BACKUP, source=LoadSource.MIRROR)
        return LoadResult(state, LoadSource.MIRROR)

    def _apply_session(self, state: ResourceState) -> None:
        session = self._read_json(self.key(SESSION_KEY))
        if not isinstance(session, dict):
            return
        start = session.get("session_start_time")
        if isinstance(start, (int, float)) and not isinstance(start, bool) and start > 0:
            state.session_start_time = float(start)
        for name in ("last_daily_reset", "last_weekly_reset"):
            if isinstance(session.get(name), str):
                setattr(state, name, session[name])

    # ── Upgrade channel ───────────────────────────────────────────────

    def save_upgrades(self, manager: UpgradeManager) -> bool:
        key = self.key(UPGRADES_KEY)
        try:
            self._write_verified(key, json.dumps(manager.levels()))
            self.save_energy_channel(manager)
        except (StorageError, SaveVerificationError) as e:
            logger.error("Error saving upgrades: %s", e)
            return False
        return True

    def save_upgrades_backup(self, manager: UpgradeManager, now_ms: float) -> bool:
        envelope = {"upgrades": manager.levels(), "timestamp": now_ms, "version": GAME_VERSION}
        try:
            self.storage.set(self.key(UPGRADES_BACKUP_KEY), json.dumps(envelope))
            self.save_energy_channel(manager)
        except StorageError as e:
            logger.error("Error writing upgrade backup: %s", e)
            return False
        return True

    def save_energy_channel(self, manager: UpgradeManager) -> None:
        energy = [entry for entry in manager.levels() if "energy" in entry["id"]]
        self.storage.set(self.key(ENERGY_UPGRADES_KEY), json.dumps(energy))

    def load_upgrades(self, manager: UpgradeManager) -> LoadSource:
        """Reset to catalog defaults, then merge the best surviving level list by id."""
        manager.reset()

        primary = self._read_json(self.key(UPGRADES_KEY))
        if _is_level_list(primary) and manager.reconcile(primary):
            return LoadSource.PRIMARY

        backup = self._read_json(self.key(UPGRADES_BACKUP_KEY))
        if isinstance(backup, dict) and _is_level_list(backup.get("upgrades")):
            manager.reset()
            if manager.reconcile(backup["upgrades"]):
                logger.info("Upgrades recovered from backup saved at %s", backup.get("timestamp"))
                return LoadSource.BACKUP

        energy = self._read_json(self.key(ENERGY_UPGRADES_KEY))
        if _is_level_list(energy):
            manager.reset()
            if manager.reconcile(energy):
                logger.info("Energy upgrades recovered from dedicated channel")
                return LoadSource.MIRROR

        manager.reset()
        return LoadSource.DEFAULTS

    # ── Achievements ──────────────────────────────────────────────────

    def save_achievements(self, book: AchievementBook, milestone_watermark: float = 0.0) -> bool:
        doc = {"achievements": book.to_records(), "milestone_watermark": milestone_watermark}
        try:
            self.storage.set(self.key(ACHIEVEMENTS_KEY), json.dumps(doc))
        except StorageError as e:
            logger.error("Error saving achievements: %s", e)
            return False
        return True

    def load_achievements(self, book: AchievementBook) -> float:
        """Merge saved unlocks into `book`; returns the stored milestone watermark."""
        doc = self._read_json(self.key(ACHIEVEMENTS_KEY))
        if not isinstance(doc, dict):
            return 0.0
        records = doc.get("achievements")
        if isinstance(records, list):
            book.merge(records)
        watermark = doc.get("milestone_watermark")
        if isinstance(watermark, (int, float)) and not isinstance(watermark, bool):
            return float(watermark)
        return 0.0


def _is_level_list(value) -> bool:
    return isinstance(value, list) and len(value) > 0


def _merge_mirrors(state: ResourceState, mirrors: Dict[str, float]) -> None:
    """Lifetime counters only move up: take the larger of record and mirror."""
    if "total_earned" in mirrors:
        state.total_points_earned = max(state.total_points_earned, mirrors["total_earned"])
    if "high_score" in mirrors:
        state.high_score = max(state.high_score, mirrors["high_score"])
        state.all_time_high_score = max(state.all_time_high_score, mirrors["high_score"])
