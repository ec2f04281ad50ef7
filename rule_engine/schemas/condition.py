"""
Condition payloads, modelled as a union discriminated by `scope`.

Each scope fixes which parts of the payload matter:

* ``signal`` / ``context``: the operand is read from the signal payload or
  the caller context; a window is only consulted by history-aware operators.
* ``history``: the operand is one past value of ``field_path`` within the
  window (``pick`` = latest or earliest).
* ``aggregated``: the operand is ``window_config.aggregation`` applied over
  the values of ``field_path`` within the window.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic.alias_generators import to_camel

from ..services.aggregations import AGGREGATIONS
from ..services.operators import OPERATORS, compile_pattern


class WindowConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="ignore")

    duration_seconds: Optional[int] = Field(None, gt=0)
    hours: Optional[float] = Field(None, gt=0)
    days: Optional[float] = Field(None, gt=0)
    aggregation: Optional[str] = None
    pick: Literal["latest", "earliest"] = "latest"
    include_current: bool = False

    @field_validator("aggregation")
    @classmethod
    def _known_aggregation(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        name = value.strip().lower()
        if name not in AGGREGATIONS:
            raise ValueError(f"unknown aggregation '{value}' (supported: {', '.join(sorted(AGGREGATIONS))})")
        return name

    def duration(self) -> Optional[timedelta]:
        if self.duration_seconds:
            return timedelta(seconds=self.duration_seconds)
        if self.hours:
            return timedelta(hours=self.hours)
        if self.days:
            return timedelta(days=self.days)
        return None


class _ConditionBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, str_strip_whitespace=True)

    field_path: str = Field(..., min_length=1, max_length=256)
    operator: str = Field(..., min_length=1)
    comparison_value: Any = None
    window_config: Optional[WindowConfig] = None
    order: Optional[int] = Field(None, ge=0)

    @field_validator("operator")
    @classmethod
    def _known_operator(cls, value: str) -> str:
        name = value.strip().lower()
        if name not in OPERATORS:
            raise ValueError(f"unknown operator '{value}'")
        return name

    @model_validator(mode="after")
    def _valid_pattern(self) -> "_ConditionBase":
        if self.operator == "matches":
            compile_pattern(self.comparison_value)
        return self


class SignalCondition(_ConditionBase):
    scope: Literal["signal"] = "signal"


class ContextCondition(_ConditionBase):
    scope: Literal["context"]


class HistoryCondition(_ConditionBase):
    scope: Literal["history"]
    window_config: WindowConfig = Field(default_factory=WindowConfig)


class AggregatedCondition(_ConditionBase):
    scope: Literal["aggregated"]
    window_config: WindowConfig

    @model_validator(mode="after")
    def _aggregation_required(self) -> "AggregatedCondition":
        if not self.window_config.aggregation:
            raise ValueError("window_config.aggregation is required for aggregated conditions")
        return self


ConditionIn = Annotated[
    Union[SignalCondition, ContextCondition, HistoryCondition, AggregatedCondition],
    Field(discriminator="scope"),
]

condition_adapter: TypeAdapter = TypeAdapter(ConditionIn)


def parse_condition(raw: Any):
    """Validate one condition payload; a missing scope means ``signal``."""
    if isinstance(raw, dict) and raw.get("scope") is None:
        raw = {**raw, "scope": "signal"}
    return condition_adapter.validate_python(raw)
