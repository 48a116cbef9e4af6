"""Helpers for the different spellings of BLE UUIDs."""
from __future__ import annotations

from typing import List

BLUETOOTH_BASE_SUFFIX = "00001000800000805f9b34fb"


def _clean(value: str) -> str:
    cleaned = (value or "").strip().lower().replace("-", "")
    if cleaned.startswith("0x"):
        cleaned = cleaned[2:]
    if not cleaned:
        raise ValueError("UUID must not be empty")
    try:
        int(cleaned, 16)
    except ValueError as exc:
        raise ValueError(f"invalid UUID: {value!r}") from exc
    return cleaned


def _dashed(hex32: str) -> str:
    return f"{hex32[0:8]}-{hex32[8:12]}-{hex32[12:16]}-{hex32[16:20]}-{hex32[20:]}"


def normalize_uuid(value: str) -> str:
    """Return the canonical lowercase dashed 128-bit form of ``value``.

    16- and 32-bit short forms are expanded on the Bluetooth base UUID.
    """
    cleaned = _clean(value)
    if len(cleaned) == 4:
        cleaned = f"0000{cleaned}{BLUETOOTH_BASE_SUFFIX}"
    elif len(cleaned) == 8:
        cleaned = f"{cleaned}{BLUETOOTH_BASE_SUFFIX}"
    if len(cleaned) != 32:
        raise ValueError(f"invalid UUID length: {value!r}")
    return _dashed(cleaned)


def short_uuid(value: str) -> str:
    """Return the 16-bit form when ``value`` lives on the Bluetooth base UUID."""
    canonical = normalize_uuid(value).replace("-", "")
    if canonical.startswith("0000") and canonical.endswith(BLUETOOTH_BASE_SUFFIX):
        return canonical[4:8]
    return _dashed(canonical)


def expand_uuid_variants(value: str) -> List[str]:
    """All spellings under which a platform might report ``value``."""
    canonical = normalize_uuid(value)
    flat = canonical.replace("-", "")
    variants: List[str] = []
    short = short_uuid(value)
    if len(short) == 4:
        variants.append(short)
    variants.append(flat)
    variants.append(canonical)
    # dict.fromkeys keeps first-seen order
    return list(dict.fromkeys(variants))


def uuid_matches(left: str, right: str) -> bool:
    try:
        return normalize_uuid(left) == normalize_uuid(right)
    except ValueError:
        return False


__all__ = [
    "BLUETOOTH_BASE_SUFFIX",
    "normalize_uuid",
    "short_uuid",
    "expand_uuid_variants",
    "uuid_matches",
]
