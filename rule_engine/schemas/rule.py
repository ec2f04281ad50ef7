"""
Pydantic schemas for rule definitions.

Input models accept both snake_case and camelCase keys.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

RuleCategory = Literal["threshold", "anomaly", "lifecycle", "integration", "custom"]


class _InputModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, str_strip_whitespace=True)


class RuleCreate(_InputModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    category: RuleCategory = "custom"
    signal_types: List[str] = Field(default_factory=list)
    enabled: bool = True


class RuleUpdate(_InputModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    category: Optional[RuleCategory] = None
    signal_types: Optional[List[str]] = None
    enabled: Optional[bool] = None

    @field_validator("name", "category", "signal_types", "enabled")
    @classmethod
    def _not_null(cls, value):
        if value is None:
            raise ValueError("may not be null")
        return value


class RuleOut(BaseModel):
    id: str
    agency_id: str
    name: str
    description: Optional[str] = None
    category: str
    signal_types: List[str] = Field(default_factory=list)
    enabled: bool
    default_version_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
