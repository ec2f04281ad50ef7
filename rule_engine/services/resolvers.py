"""
Operand resolution for rule conditions.

Values are addressed with dot-separated field paths (``metrics.sessions``,
``items.0.sku``). Lookback scopes read the `signals` table through
:class:`HistoryLookup`, which bounds every query by a timeout.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ..models.signal import Signal
from .aggregations import aggregate


logger = logging.getLogger("resolvers")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class HistoryLookupError(RuntimeError):
    """A lookback query failed or exceeded its time budget."""


def get_path(data: Any, path: str) -> Any:
    """Return the value at `path` inside nested dicts/lists, or MISSING."""
    if not path:
        return MISSING
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            idx = int(part)
            if idx >= len(current) or idx < -len(current):
                return MISSING
            current = current[idx]
        else:
            return MISSING
    return current


class HistoryLookup:
    """Signals of one tenant and type that occurred before `now`, newest first."""

    def __init__(
        self,
        db: Session,
        *,
        agency_id: str,
        signal_type: str,
        now: datetime,
        exclude_signal_id: Optional[str] = None,
        timeout_sec: float = 5.0,
        max_rows: int = 1000,
    ) -> None:
        self.db = db
        self.agency_id = agency_id
        self.signal_type = signal_type
        self.now = now
        self.exclude_signal_id = exclude_signal_id
        self.timeout_sec = timeout_sec
        self.max_rows = max_rows
        self._cache: dict[datetime, list[Signal]] = {}

    def _query(self, since: datetime) -> list[Signal]:
        query = self.db.query(Signal).filter(
            Signal.agency_id == self.agency_id,
            Signal.type == self.signal_type,
            Signal.occurred_at >= since,
            Signal.occurred_at < self.now,
        )
        if self.exclude_signal_id:
            query = query.filter(Signal.id != self.exclude_signal_id)
        return (
            query.order_by(Signal.occurred_at.desc(), Signal.created_at.desc())
            .limit(self.max_rows)
            .all()
        )

    def signals(self, since: datetime) -> list[Signal]:
        if since in self._cache:
            return self._cache[since]
        is_postgres = self.db.get_bind().dialect.name == "postgresql"
        started = time.monotonic()
        try:
            if is_postgres:
                self.db.execute(text(f"SET LOCAL statement_timeout = {max(1, int(self.timeout_sec * 1000))}"))
            rows = self._query(since)
            if is_postgres:
                self.db.execute(text("SET LOCAL statement_timeout TO DEFAULT"))
        except DBAPIError as exc:
            self.db.rollback()
            raise HistoryLookupError(f"history lookup failed: {exc.orig}") from exc
        elapsed = time.monotonic() - started
        if elapsed > self.timeout_sec:
            logger.warning(
                "History lookup exceeded timeout agency=%s type=%s elapsed=%.3fs",
                self.agency_id,
                self.signal_type,
                elapsed,
            )
            raise HistoryLookupError(f"history lookup timed out after {elapsed:.3f}s")
        self._cache[since] = rows
        return rows

    def values(self, field_path: str, since: datetime) -> List[Any]:
        out: List[Any] = []
        for row in self.signals(since):
            value = get_path(row.payload or {}, field_path)
            if value is MISSING or value is None:
                continue
            out.append(value)
        return out


@dataclass
class Resolution:
    found: bool
    value: Any = None
    note: Optional[str] = None


def lookback_since(now: datetime, window: Any, default_days: float) -> datetime:
    duration = window.duration() if window is not None else None
    return now - (duration or timedelta(days=default_days))


def resolve_operand(
    condition: Any,
    *,
    payload: dict,
    context: dict,
    lookup: Optional[HistoryLookup],
    now: datetime,
    default_days: float,
) -> Resolution:
    """Resolve a typed condition's operand according to its scope."""
    scope = condition.scope
    if scope == "signal":
        value = get_path(payload, condition.field_path)
        if value is MISSING:
            return Resolution(False, note=f"field '{condition.field_path}' not found in signal payload")
        return Resolution(True, value)
    if scope == "context":
        value = get_path(context, condition.field_path)
        if value is MISSING:
            return Resolution(False, note=f"field '{condition.field_path}' not found in context")
        return Resolution(True, value)

    if lookup is None:
        return Resolution(False, note="history lookup unavailable")
    window = condition.window_config
    values = lookup.values(condition.field_path, lookback_since(now, window, default_days))
    if window.include_current:
        current = get_path(payload, condition.field_path)
        if current is not MISSING and current is not None:
            values = [current] + values

    if scope == "history":
        if not values:
            return Resolution(False, note=f"no values for '{condition.field_path}' in window")
        return Resolution(True, values[0] if window.pick == "latest" else values[-1])
    if scope == "aggregated":
        result = aggregate(window.aggregation, list(reversed(values)))
        if result is None:
            return Resolution(False, note=f"no values for '{condition.field_path}' in window")
        return Resolution(True, result)
    return Resolution(False, note=f"unknown scope '{scope}'")
