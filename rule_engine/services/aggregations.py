"""
Aggregation registry for the ``aggregated`` condition scope.

Every function receives the values of the condition's field path found in
the lookback window, oldest first, with missing values already dropped.

========================  ===============================================
name                      result
========================  ===============================================
``count``                 number of values
``sum``                   sum of numeric values (0 when there are none)
``avg``                   arithmetic mean of numeric values
``min`` / ``max``         smallest / largest numeric value
``first`` / ``last``      oldest / newest value of any type
``distinct_count``        number of distinct values
========================  ===============================================

Numeric aggregations skip values that are not numbers. ``avg``, ``min``,
``max``, ``first`` and ``last`` return ``None`` over an empty window, which
the engine reports as an unresolved operand.
"""

from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional

AggregationFn = Callable[[List[Any]], Any]

AGGREGATIONS: Dict[str, AggregationFn] = {}


def register_aggregation(name: str) -> Callable[[AggregationFn], AggregationFn]:
    def _decorator(fn: AggregationFn) -> AggregationFn:
        AGGREGATIONS[name] = fn
        return fn

    return _decorator


def _numbers(values: List[Any]) -> List[float]:
    out: List[float] = []
    for value in values:
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            out.append(float(value))
            continue
        if isinstance(value, str):
            try:
                out.append(float(value))
            except ValueError:
                continue
    return out


@register_aggregation("count")
def _count(values: List[Any]) -> int:
    return len(values)


@register_aggregation("sum")
def _sum(values: List[Any]) -> float:
    return sum(_numbers(values))


@register_aggregation("avg")
def _avg(values: List[Any]) -> Optional[float]:
    nums = _numbers(values)
    if not nums:
        return None
    return sum(nums) / len(nums)


@register_aggregation("min")
def _min(values: List[Any]) -> Optional[float]:
    nums = _numbers(values)
    return min(nums) if nums else None


@register_aggregation("max")
def _max(values: List[Any]) -> Optional[float]:
    nums = _numbers(values)
    return max(nums) if nums else None


@register_aggregation("first")
def _first(values: List[Any]) -> Any:
    return values[0] if values else None


@register_aggregation("last")
def _last(values: List[Any]) -> Any:
    return values[-1] if values else None


@register_aggregation("distinct_count")
def _distinct_count(values: List[Any]) -> int:
    return len({json.dumps(value, sort_keys=True, default=str) for value in values})


def aggregate(name: str, values: List[Any]) -> Any:
    fn = AGGREGATIONS.get((name or "").strip().lower())
    if fn is None:
        raise KeyError(f"unknown aggregation '{name}'")
    return fn(values)
