"""
Read models for the audit and evaluation logs.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RuleAuditOut(BaseModel):
    id: int
    rule_id: str
    rule_version_id: Optional[str] = None
    actor_id: Optional[str] = None
    change_type: str
    change_summary: Optional[str] = None
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RuleEvaluationOut(BaseModel):
    id: Optional[int] = None
    rule_id: str
    rule_version_id: Optional[str] = None
    signal_id: str
    agency_id: str
    matched: bool
    status: str
    condition_results: list = Field(default_factory=list)
    actions_triggered: list = Field(default_factory=list)
    evaluation_context: Optional[dict] = None
    duration_ms: Optional[int] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
