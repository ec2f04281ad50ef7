"""
Signal ingestion payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .audit import RuleEvaluationOut


class SignalIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, str_strip_whitespace=True)

    id: Optional[str] = Field(None, max_length=64)
    agency_id: Optional[str] = Field(None, max_length=64)
    source: str = Field("internal", max_length=32)
    type: str = Field(..., min_length=1, max_length=64)
    payload: Dict[str, Any] = Field(default_factory=dict)
    client_id: Optional[str] = None
    urgency: Literal["low", "normal", "high", "critical"] = "normal"
    occurred_at: Optional[datetime] = None
    # Caller-supplied data for context-scoped conditions; not persisted with the signal
    context: Dict[str, Any] = Field(default_factory=dict)


class SignalEvaluationOut(BaseModel):
    signal_id: str
    evaluations: List[RuleEvaluationOut] = Field(default_factory=list)
    matched_rule_ids: List[str] = Field(default_factory=list)
