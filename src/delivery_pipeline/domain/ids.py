"""Identifiers for runs and lifecycle events, plus the stage naming rule.

Ids read ``<kind>-<ULID>``. The ULID packs 48 bits of millisecond time and 80
random bits into 26 Crockford base32 characters, so ids of the same kind sort
by creation time.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Final

ULID_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
ULID_LENGTH: Final[int] = 26

_RANDOM_BYTES: Final[int] = 10
_RANDOM_BITS: Final[int] = _RANDOM_BYTES * 8
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_DIGITS: Final[dict[str, int]] = {char: value for value, char in enumerate(ULID_ALPHABET)}

# 26 base32 digits carry 130 bits; the leading digit may only use the low 3.
_MAX_LEADING_DIGIT: Final[int] = 7

_STAGE_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_-]{0,63}$")

RandomSource = Callable[[int], bytes]


class IdKind(StrEnum):
    RUN = "run"
    EVENT = "evt"


def generate_ulid(
    *, timestamp_ms: int | None = None, randbytes: RandomSource | None = None
) -> str:
    """Encode ``timestamp_ms`` (default: now) and 80 random bits as a ULID."""

    millis = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if isinstance(millis, bool) or not isinstance(millis, int):
        raise ValueError(f"timestamp_ms must be an int, got {type(millis).__name__}")
    if not 0 <= millis <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms must be within 0..{_MAX_TIMESTAMP_MS}, got {millis}")

    entropy = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if not isinstance(entropy, (bytes, bytearray)) or len(entropy) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (millis << _RANDOM_BITS) | int.from_bytes(entropy, "big")
    return "".join(
        ULID_ALPHABET[(value >> shift) & 0x1F] for shift in range(5 * (ULID_LENGTH - 1), -1, -5)
    )


def validate_ulid(value: str) -> None:
    _decode_ulid(value)


def ulid_timestamp_ms(value: str) -> int:
    return _decode_ulid(value) >> _RANDOM_BITS


def new_id(kind: IdKind, *, timestamp_ms: int | None = None) -> str:
    return f"{kind.value}-{generate_ulid(timestamp_ms=timestamp_ms)}"


def check_id(kind: IdKind, value: str) -> None:
    """Raise ``ValueError`` unless ``value`` is a well-formed id of ``kind``."""

    if not isinstance(value, str):
        raise ValueError(f"{kind.name.lower()} id must be a string, got {type(value).__name__}")
    lead = f"{kind.value}-"
    if not value.startswith(lead):
        raise ValueError(f"expected a {lead}<ulid> id, got {value!r}")
    try:
        _decode_ulid(value[len(lead) :])
    except ValueError as exc:
        raise ValueError(f"{value!r}: {exc}") from exc


def generate_run_id() -> str:
    return new_id(IdKind.RUN)


def validate_run_id(value: str) -> None:
    check_id(IdKind.RUN, value)


def generate_event_id() -> str:
    return new_id(IdKind.EVENT)


def validate_event_id(value: str) -> None:
    check_id(IdKind.EVENT, value)


def validate_stage_name(name: str) -> None:
    """Stage names double as artifact keys: lowercase, ``-``/``_`` allowed, max 64."""

    if not isinstance(name, str) or _STAGE_NAME_RE.fullmatch(name) is None:
        raise ValueError(
            f"stage name must match {_STAGE_NAME_RE.pattern} (got {name!r})"
        )


def _decode_ulid(value: object) -> int:
    if not isinstance(value, str) or len(value) != ULID_LENGTH:
        raise ValueError(f"ULID must be a {ULID_LENGTH}-character string")
    decoded = 0
    for position, char in enumerate(value.upper()):
        digit = _DIGITS.get(char)
        if digit is None:
            raise ValueError(f"invalid ULID character {char!r} at position {position}")
        if position == 0 and digit > _MAX_LEADING_DIGIT:
            raise ValueError("ULID exceeds 128 bits")
        decoded = (decoded << 5) | digit
    return decoded


__all__ = [
    "ULID_ALPHABET",
    "ULID_LENGTH",
    "IdKind",
    "RandomSource",
    "check_id",
    "generate_event_id",
    "generate_run_id",
    "generate_ulid",
    "new_id",
    "ulid_timestamp_ms",
    "validate_event_id",
    "validate_run_id",
    "validate_stage_name",
    "validate_ulid",
]
