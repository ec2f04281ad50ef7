"""
Pydantic schemas for rule versions and their read models.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _ConfigBlob(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="allow")


class ThresholdConfig(_ConfigBlob):
    window_days: Optional[int] = Field(None, gt=0)
    baseline_type: Literal["previous", "average"] = "previous"


class LifecycleConfig(_ConfigBlob):
    inactivity_field: str = Field("lastActivityAt", min_length=1)
    trigger_days: Optional[int] = Field(None, ge=0)


class AnomalyConfig(_ConfigBlob):
    z_score_threshold: Optional[float] = Field(None, gt=0)
    window_days: Optional[int] = Field(None, gt=0)


class RuleVersionCreate(BaseModel):
    """Version-level settings; conditions and actions are validated item by item."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    condition_logic: Literal["all", "any"] = "all"
    threshold_config: Optional[ThresholdConfig] = None
    lifecycle_config: Optional[LifecycleConfig] = None
    anomaly_config: Optional[AnomalyConfig] = None


class RuleVersionOut(BaseModel):
    id: str
    rule_id: str
    version: int
    status: str
    condition_logic: str
    threshold_config: Optional[dict] = None
    lifecycle_config: Optional[dict] = None
    anomaly_config: Optional[dict] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RuleConditionOut(BaseModel):
    id: str
    rule_version_id: str
    order: int
    field_path: str
    operator: str
    comparison_value: Any = None
    window_config: Optional[dict] = None
    scope: str

    model_config = ConfigDict(from_attributes=True)


class RuleActionOut(BaseModel):
    id: str
    rule_version_id: str
    order: int
    action_type: str
    action_config: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class RuleVersionDetailOut(RuleVersionOut):
    conditions: List[RuleConditionOut] = Field(default_factory=list)
    actions: List[RuleActionOut] = Field(default_factory=list)
