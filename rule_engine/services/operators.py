"""
Operator registry for rule conditions.

An operator is a function ``fn(actual, expected, ctx) -> bool`` where
``actual`` is the resolved operand, ``expected`` the condition's
``comparison_value`` and ``ctx`` an :class:`OperatorContext`. Operators
raise :class:`OperatorError` (or a plain ``TypeError``/``ValueError``) on
inputs they cannot compare; the engine records that as a failed condition.

Supported operators
-------------------

Comparison
    ``gt``, ``gte``, ``lt``, ``lte``: numeric comparison. Numeric strings are
    accepted; booleans are not numbers.
    ``eq``, ``neq``: equality; numbers compare by value (``"10" eq 10``),
    everything else by ``==``.
    ``between``: inclusive range, ``expected`` is ``[low, high]`` or
    ``{"min": low, "max": high}``.

Membership and patterns
    ``contains``, ``not_contains``: substring for strings, membership for
    lists, key lookup for mappings.
    ``in``, ``not_in``: ``actual`` is a member of the ``expected`` list.
    ``matches``: ``re.search(expected, str(actual))`` over at most
    ``MAX_MATCH_INPUT`` characters. Patterns longer than ``MAX_PATTERN_LENGTH``
    or with nested quantifiers are rejected (see :func:`compile_pattern`).

Presence
    ``exists``, ``not_exists``: whether the field resolved to a non-null
    value. These are the only operators evaluated on unresolved fields.

Threshold crossing (previous value from ``context["previous"]`` or the most
recent value in the lookback window)
    ``crosses_above``: ``previous < expected <= actual``.
    ``crosses_below``: ``previous > expected >= actual``.
    ``changed_to``: ``actual == expected`` and the previous value differed
    (no previous value counts as a change).
    ``changed_from``: the previous value equalled ``expected`` and ``actual``
    does not.

Trend (version ``threshold_config``: ``window_days``, ``baseline_type``)
    ``percent_change_gt``, ``percent_change_lt``: magnitude of the percentage
    change of ``actual`` against the baseline, which is the previous value
    (``baseline_type = previous``) or the mean of the window (``average``).
    Rises and drops count alike: 100 -> 50 is a 50% change.

Anomaly (version ``anomaly_config``: ``z_score_threshold``, ``window_days``)
    ``anomaly_zscore_gt``: ``|actual - mean| / pstdev`` over the window
    (population deviation) exceeds ``z_score_threshold``, falling back to
    ``expected`` and then 3.0.
    Needs at least two past values and a non-zero deviation.

Lifecycle (version ``lifecycle_config``: ``inactivity_field``, ``trigger_days``)
    ``inactivity_days_gt``: days elapsed since the timestamp in ``actual``
    (or, when the field is absent, in ``inactivity_field`` of the scope data)
    exceed ``expected``, falling back to ``trigger_days``.
"""

from __future__ import annotations

import re
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from .resolvers import MISSING, get_path


class OperatorError(ValueError):
    """Operands cannot be compared by the requested operator."""


@dataclass
class OperatorContext:
    field_path: str
    now: datetime
    scope_data: Dict[str, Any] = field(default_factory=dict)
    previous: Dict[str, Any] = field(default_factory=dict)
    threshold_config: Dict[str, Any] = field(default_factory=dict)
    lifecycle_config: Dict[str, Any] = field(default_factory=dict)
    anomaly_config: Dict[str, Any] = field(default_factory=dict)
    # window_days (None = default window) -> past values, most recent first
    history_loader: Optional[Callable[[Optional[float]], List[Any]]] = None
    _history_cache: Dict[Optional[float], List[Any]] = field(default_factory=dict, repr=False)

    def history(self, window_days: Optional[float] = None) -> List[Any]:
        if self.history_loader is None:
            return []
        if window_days not in self._history_cache:
            self._history_cache[window_days] = list(self.history_loader(window_days))
        return self._history_cache[window_days]

    def previous_value(self) -> Tuple[bool, Any]:
        value = get_path(self.previous, self.field_path)
        if value is not MISSING:
            return True, value
        past = self.history(self.threshold_config.get("window_days"))
        if past:
            return True, past[0]
        return False, None


OperatorFn = Callable[[Any, Any, OperatorContext], bool]


@dataclass(frozen=True)
class OperatorSpec:
    name: str
    fn: OperatorFn
    accepts_missing: bool = False


OPERATORS: Dict[str, OperatorSpec] = {}


MAX_PATTERN_LENGTH = 256
MAX_MATCH_INPUT = 4096
# A quantified group that itself contains a quantifier: (a+)+, (\w*\s?)*, (x+){2,}
_NESTED_QUANTIFIER = re.compile(r"\((?:[^()\\]|\\.)*[+*}](?:[^()\\]|\\.)*\)(?:[+*]|\{\d+,\d*\})")


def compile_pattern(pattern: Any) -> "re.Pattern[str]":
    """Compile a `matches` pattern, rejecting ones that can backtrack without bound."""
    if not isinstance(pattern, str):
        raise OperatorError("matches expects a pattern string")
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise OperatorError(f"pattern longer than {MAX_PATTERN_LENGTH} characters")
    if _NESTED_QUANTIFIER.search(pattern):
        raise OperatorError("pattern has a nested quantifier")
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise OperatorError(f"invalid pattern: {exc}") from exc


def register_operator(name: str, *, accepts_missing: bool = False) -> Callable[[OperatorFn], OperatorFn]:
    def _decorator(fn: OperatorFn) -> OperatorFn:
        OPERATORS[name] = OperatorSpec(name=name, fn=fn, accepts_missing=accepts_missing)
        return fn

    return _decorator


def get_operator(name: str) -> Optional[OperatorSpec]:
    return OPERATORS.get((name or "").strip().lower())


def to_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise OperatorError(f"not a number: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise OperatorError(f"not a number: {value!r}") from None
    raise OperatorError(f"not a number: {value!r}")


def _maybe_number(value: Any) -> Optional[float]:
    try:
        return to_number(value)
    except OperatorError:
        return None


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = datetime.fromtimestamp(float(value), tz=timezone.utc)
    elif isinstance(value, str):
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(raw)
        except ValueError:
            raise OperatorError(f"not a timestamp: {value!r}") from None
    else:
        raise OperatorError(f"not a timestamp: {value!r}")
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _equals(actual: Any, expected: Any) -> bool:
    a_num = _maybe_number(actual)
    e_num = _maybe_number(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    return actual == expected


@register_operator("gt")
def _gt(actual, expected, ctx):
    return to_number(actual) > to_number(expected)


@register_operator("gte")
def _gte(actual, expected, ctx):
    return to_number(actual) >= to_number(expected)


@register_operator("lt")
def _lt(actual, expected, ctx):
    return to_number(actual) < to_number(expected)


@register_operator("lte")
def _lte(actual, expected, ctx):
    return to_number(actual) <= to_number(expected)


@register_operator("eq")
def _eq(actual, expected, ctx):
    return _equals(actual, expected)


@register_operator("neq")
def _neq(actual, expected, ctx):
    return not _equals(actual, expected)


@register_operator("between")
def _between(actual, expected, ctx):
    if isinstance(expected, dict):
        low, high = expected.get("min"), expected.get("max")
    elif isinstance(expected, (list, tuple)) and len(expected) == 2:
        low, high = expected
    else:
        raise OperatorError("between expects [low, high] or {min, max}")
    value = to_number(actual)
    return to_number(low) <= value <= to_number(high)


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return str(item) in container
    if isinstance(container, dict):
        return item in container
    if isinstance(container, (list, tuple, set)):
        return any(_equals(member, item) for member in container)
    raise OperatorError(f"cannot search in {type(container).__name__}")


@register_operator("contains")
def _contains_op(actual, expected, ctx):
    return _contains(actual, expected)


@register_operator("not_contains")
def _not_contains_op(actual, expected, ctx):
    return not _contains(actual, expected)


@register_operator("in")
def _in(actual, expected, ctx):
    if not isinstance(expected, (list, tuple)):
        raise OperatorError("in expects a list")
    return any(_equals(actual, member) for member in expected)


@register_operator("not_in")
def _not_in(actual, expected, ctx):
    return not _in(actual, expected, ctx)


@register_operator("matches")
def _matches(actual, expected, ctx):
    return compile_pattern(expected).search(str(actual)[:MAX_MATCH_INPUT]) is not None


@register_operator("exists", accepts_missing=True)
def _exists(actual, expected, ctx):
    return actual is not None


@register_operator("not_exists", accepts_missing=True)
def _not_exists(actual, expected, ctx):
    return actual is None


@register_operator("crosses_above")
def _crosses_above(actual, expected, ctx):
    found, previous = ctx.previous_value()
    if not found or previous is None:
        return False
    threshold = to_number(expected)
    return to_number(previous) < threshold <= to_number(actual)


@register_operator("crosses_below")
def _crosses_below(actual, expected, ctx):
    found, previous = ctx.previous_value()
    if not found or previous is None:
        return False
    threshold = to_number(expected)
    return to_number(previous) > threshold >= to_number(actual)


@register_operator("changed_to")
def _changed_to(actual, expected, ctx):
    if not _equals(actual, expected):
        return False
    found, previous = ctx.previous_value()
    return not found or not _equals(previous, expected)


@register_operator("changed_from")
def _changed_from(actual, expected, ctx):
    found, previous = ctx.previous_value()
    if not found:
        return False
    return _equals(previous, expected) and not _equals(actual, expected)


def percent_change(actual: Any, ctx: OperatorContext) -> Optional[float]:
    baseline_type = (ctx.threshold_config.get("baseline_type") or "previous").lower()
    if baseline_type == "average":
        past = [n for n in (_maybe_number(v) for v in ctx.history(ctx.threshold_config.get("window_days"))) if n is not None]
        if not past:
            return None
        baseline = sum(past) / len(past)
    else:
        found, previous = ctx.previous_value()
        if not found or previous is None:
            return None
        baseline = to_number(previous)
    if baseline == 0:
        raise OperatorError("baseline is zero")
    return (to_number(actual) - baseline) / abs(baseline) * 100.0


@register_operator("percent_change_gt")
def _percent_change_gt(actual, expected, ctx):
    change = percent_change(actual, ctx)
    return change is not None and abs(change) > to_number(expected)


@register_operator("percent_change_lt")
def _percent_change_lt(actual, expected, ctx):
    change = percent_change(actual, ctx)
    return change is not None and abs(change) < to_number(expected)


@register_operator("anomaly_zscore_gt")
def _anomaly_zscore_gt(actual, expected, ctx):
    configured = ctx.anomaly_config.get("z_score_threshold")
    if configured:
        threshold = to_number(configured)
    elif expected is not None:
        threshold = to_number(expected)
    else:
        threshold = 3.0
    past = [n for n in (_maybe_number(v) for v in ctx.history(ctx.anomaly_config.get("window_days"))) if n is not None]
    if len(past) < 2:
        return False
    stdev = statistics.pstdev(past)
    if stdev == 0:
        return False
    z_score = abs(to_number(actual) - statistics.mean(past)) / stdev
    return z_score > threshold


@register_operator("inactivity_days_gt", accepts_missing=True)
def _inactivity_days_gt(actual, expected, ctx):
    stamp = actual
    if stamp is None:
        fallback = get_path(ctx.scope_data, ctx.lifecycle_config.get("inactivity_field") or "lastActivityAt")
        stamp = None if fallback is MISSING else fallback
    if stamp is None:
        raise OperatorError("no activity timestamp")
    if expected is not None:
        threshold = to_number(expected)
    elif ctx.lifecycle_config.get("trigger_days") is not None:
        threshold = to_number(ctx.lifecycle_config["trigger_days"])
    else:
        raise OperatorError("no inactivity threshold")
    elapsed = ctx.now - _to_datetime(stamp)
    return elapsed.total_seconds() / 86400.0 > threshold
