"""Limit parsing helpers with hard caps."""

from __future__ import annotations

import os
from typing import Any


DEFAULT_LIMIT = 100
DEFAULT_MAX_PAGE_SIZE = 200


def get_max_page_size() -> int:
    raw = os.getenv("API_MAX_PAGE_SIZE", str(DEFAULT_MAX_PAGE_SIZE))
    try:
        val = int(raw)
    except Exception:
        val = DEFAULT_MAX_PAGE_SIZE
    if val < 1:
        return DEFAULT_MAX_PAGE_SIZE
    return val


def clamp_limit(limit: int) -> int:
    max_size = get_max_page_size()
    if limit < 1:
        return 1
    return min(limit, max_size)


def parse_limit(raw: Any, default: int = DEFAULT_LIMIT) -> int:
    """Parse a caller-supplied limit; absent, unparsable or non-positive values fall back to `default`."""
    if raw is None or isinstance(raw, bool):
        return clamp_limit(default)
    try:
        val = int(str(raw).strip())
    except (TypeError, ValueError):
        return clamp_limit(default)
    if val < 1:
        return clamp_limit(default)
    return clamp_limit(val)
