from __future__ import annotations

import hashlib
from enum import IntEnum

KEY_PREFIX = "gridrank"


class CacheTTL(IntEnum):
    REALTIME = 5 * 60
    SERP = 4 * 60 * 60
    STANDARD = 24 * 60 * 60
    REFERENCE = 7 * 24 * 60 * 60


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]


def _normalize_keyword(keyword: str) -> str:
    return " ".join(keyword.strip().lower().split())


def serp_maps_key(keyword: str, coordinate: str, depth: int) -> str:
    return f"{KEY_PREFIX}:serp:maps:{_digest(_normalize_keyword(keyword))}:{_digest(coordinate)}:{depth}"


def serp_organic_key(keyword: str, location: str, depth: int) -> str:
    return f"{KEY_PREFIX}:serp:organic:{_digest(_normalize_keyword(keyword))}:{_digest(location)}:{depth}"


def serp_locations_key(country: str | None = None) -> str:
    return f"{KEY_PREFIX}:serp:locations:{(country or 'all').strip().lower()}"
