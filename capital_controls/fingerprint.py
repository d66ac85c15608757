"""Content-addressed identifiers.

All deterministic IDs in the engine (breach events, snapshot hashes, gate
audit keys) go through :func:`fingerprint`, so the hashing strategy can be
swapped here without touching call sites.
"""
from __future__ import annotations

from enum import Enum
from typing import Iterable

__all__ = ["fnv1a_32", "fingerprint"]

_FNV_OFFSET = 0x811C9DC5
_FNV_PRIME = 0x01000193


def fnv1a_32(data: str) -> str:
    """32-bit FNV-1a over the UTF-16 code units of *data*, as 8 hex chars."""
    h = _FNV_OFFSET
    encoded = data.encode("utf-16-le")
    for i in range(0, len(encoded), 2):
        h ^= encoded[i] | (encoded[i + 1] << 8)
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return f"{h:08x}"


def fingerprint(parts: Iterable[object], prefix: str = "", sep: str = "|") -> str:
    """Join *parts* with *sep* and hash them; ``prefix`` is prepended verbatim."""
    raw = sep.join(p.value if isinstance(p, Enum) else str(p) for p in parts)
    return f"{prefix}{fnv1a_32(raw)}"
