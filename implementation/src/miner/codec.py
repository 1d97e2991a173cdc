"""Save record codec and portable export/import.

The record is a flat JSON object of ResourceState fields (snake_case).
decode_state() is the single strict entry point: anything it rejects raises
SaveValidationError and the caller falls through its recovery chain.

Export formats:
    plain:     base64(JSON envelope)
    encrypted: base64(IV || AES-256-CBC(PKCS7(JSON envelope))), key from PBKDF2
Import accepts raw JSON, base64-JSON or the encrypted form.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

from Crypto.Cipher import AES
from Crypto.Hash import SHA256
from Crypto.Protocol.KDF import PBKDF2
from Crypto.Random import get_random_bytes
from Crypto.Util.Padding import pad, unpad

from miner.errors import ImportFormatError, SaveValidationError
from miner.store import GAME_VERSION, ResourceState

logger = logging.getLogger(__name__)

# Rejected when missing, non-numeric or (for the first group) negative.
REQUIRED_NON_NEGATIVE = (
    "points",
    "points_per_second",
    "total_points_earned",
    "last_save_time",
    "session_start_time",
)
# Required, but negative values are clamped instead of rejected.
REQUIRED_CLAMPED = (
    "total_earned_24h",
    "total_earned_7d",
    "upgrades_purchased",
    "miners_active",
)
INT_FIELDS = ("upgrades_purchased", "miners_active")

_PASS_PHRASE = b"divine-miner/portable-save"
_SALT_VALUE = b"dm#export.salt.1"
_KDF_ROUNDS = 20_000
_KEY_BYTES = 32

EXPORT_FORMAT = "divine-miner-export"


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return isinstance(value, int) or math.isfinite(value)


def encode_state(state: ResourceState) -> Dict[str, Any]:
    return asdict(state)


def dumps_state(state: ResourceState) -> str:
    """Canonical text form; stable so a read-back can be compared byte for byte."""
    return json.dumps(encode_state(state), sort_keys=True, separators=(",", ":"))


def decode_state(data: Any) -> ResourceState:
    if not isinstance(data, Mapping):
        raise SaveValidationError(f"save record must be an object, got {type(data).__name__}")

    for name in REQUIRED_NON_NEGATIVE + REQUIRED_CLAMPED:
        if name not in data:
            raise SaveValidationError(f"missing required field '{name}'")
        if not _is_number(data[name]):
            raise SaveValidationError(f"field '{name}' is not a finite number: {data[name]!r}")
    if not isinstance(data.get("is_mining"), bool):
        raise SaveValidationError(f"field 'is_mining' must be a boolean: {data.get('is_mining')!r}")
    for name in REQUIRED_NON_NEGATIVE:
        if data[name] < 0:
            raise SaveValidationError(f"field '{name}' is negative: {data[name]!r}")

    defaults = ResourceState()
    values: Dict[str, Any] = {}
    for f in fields(ResourceState):
        default = getattr(defaults, f.name)
        if f.name not in data:
            values[f.name] = default
            continue
        raw = data[f.name]
        if isinstance(default, bool):
            ok = isinstance(raw, bool)
        elif isinstance(default, str):
            ok = isinstance(raw, str)
        else:
            ok = _is_number(raw)
        if not ok:
            logger.warning("Save field '%s' has invalid value %r, using default", f.name, raw)
            values[f.name] = default
        elif f.name in INT_FIELDS:
            values[f.name] = int(raw)
        elif isinstance(default, float):
            values[f.name] = float(raw)
        else:
            values[f.name] = raw

    unknown = set(data) - set(values)
    if unknown:
        logger.debug("Ignoring unknown save fields: %s", ", ".join(sorted(unknown)))

    state = ResourceState(**values)
    _clamp_statistics(state)
    return state


def _clamp_statistics(state: ResourceState) -> None:
    state.total_earned_24h = max(0.0, state.total_earned_24h)
    state.total_earned_7d = max(0.0, state.total_earned_7d)
    state.upgrades_purchased = max(0, state.upgrades_purchased)
    if state.miners_active < 1:
        state.miners_active = 1
    state.unclaimed_offline_rewards = max(0.0, state.unclaimed_offline_rewards)
    state.total_offline_claimed = max(0.0, state.total_offline_claimed)
    state.offline_efficiency_bonus = min(1.4, max(0.0, state.offline_efficiency_bonus))
    state.high_score = max(0.0, state.high_score)
    state.all_time_high_score = max(0.0, state.all_time_high_score)
    state.max_energy = max(0.0, state.max_energy)
    state.set_energy(state.current_energy)


def loads_state(text: str) -> ResourceState:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SaveValidationError(f"save record is not valid JSON: {e}") from e
    return decode_state(data)


# ── Portable export / import ──────────────────────────────────────────


@dataclass
class ImportedSave:
    state: ResourceState
    upgrades: List[dict] = field(default_factory=list)


def _envelope(state: ResourceState, upgrades: Optional[List[dict]]) -> str:
    payload = {
        "format": EXPORT_FORMAT,
        "version": GAME_VERSION,
        "state": encode_state(state),
        "upgrades": list(upgrades or []),
    }
    return json.dumps(payload, separators=(",", ":"))


def _derive_key(passphrase: bytes) -> bytes:
    return PBKDF2(passphrase, _SALT_VALUE, dkLen=_KEY_BYTES, count=_KDF_ROUNDS, hmac_hash_module=SHA256)


def export_save(state: ResourceState, upgrades: Optional[List[dict]] = None) -> str:
    return base64.b64encode(_envelope(state, upgrades).encode("utf-8")).decode("ascii")


def export_save_encrypted(state: ResourceState, upgrades: Optional[List[dict]] = None,
                          passphrase: bytes = _PASS_PHRASE) -> str:
    iv = get_random_bytes(AES.block_size)
    cipher = AES.new(_derive_key(passphrase), AES.MODE_CBC, iv)
    ciphertext = cipher.encrypt(pad(_envelope(state, upgrades).encode("utf-8"), AES.block_size))
    return base64.b64encode(iv + ciphertext).decode("ascii")


def _decrypt(raw: bytes, passphrase: bytes) -> Optional[str]:
    if len(raw) < 2 * AES.block_size or len(raw) % AES.block_size:
        return None
    iv, ciphertext = raw[:AES.block_size], raw[AES.block_size:]
    cipher = AES.new(_derive_key(passphrase), AES.MODE_CBC, iv)
    try:
        return unpad(cipher.decrypt(ciphertext), AES.block_size).decode("utf-8")
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug("Encrypted import rejected: %s", e)
        return None


def _json_object(text: str) -> Optional[dict]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return data if isinstance(data, dict) else None


def _from_payload(data: dict) -> ImportedSave:
    try:
        if data.get("format") == EXPORT_FORMAT:
            upgrades = data.get("upgrades") or []
            if not isinstance(upgrades, list):
                raise SaveValidationError("upgrades must be a list")
            return ImportedSave(decode_state(data.get("state")), upgrades)
        return ImportedSave(decode_state(data))
    except SaveValidationError as e:
        raise ImportFormatError(f"imported save is invalid: {e}") from e


def import_save(encoded: str, passphrase: bytes = _PASS_PHRASE) -> ImportedSave:
    """Decode an export string or a raw save record.

    1. Raw JSON object
    2. base64 -> JSON object
    3. base64 -> IV + AES-256-CBC ciphertext -> JSON object
    """
    text = encoded.strip()
    data = _json_object(text)
    if data is not None:
        return _from_payload(data)

    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImportFormatError("import text is neither JSON nor base64") from e

    try:
        data = _json_object(raw.decode("utf-8"))
    except UnicodeDecodeError:
        data = None
    if data is not None:
        return _from_payload(data)

    plaintext = _decrypt(raw, passphrase)
    if plaintext is not None:
        data = _json_object(plaintext)
        if data is not None:
            return _from_payload(data)

    raise ImportFormatError("could not parse import text (not a valid save)")
