"""
Action payloads.

`action_config` is validated against a typed model for the built-in action
types. Other types are dispatched by externally registered handlers, so
their config stays a free-form mapping.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

Urgency = Literal["low", "normal", "high", "critical"]


class _ConfigModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="allow")


class CreateInsightConfig(_ConfigModel):
    title: str = Field(..., min_length=1)
    message: Optional[str] = None
    severity: Urgency = "normal"


class SendNotificationConfig(_ConfigModel):
    channel: Literal["in_app", "email", "slack", "sms"] = "in_app"
    recipients: List[str] = Field(default_factory=list)
    message: str = Field(..., min_length=1)


class CreateTaskConfig(_ConfigModel):
    title: str = Field(..., min_length=1)
    assignee_id: Optional[str] = None
    due_in_days: Optional[int] = Field(None, ge=0)
    priority: Urgency = "normal"


class WebhookConfig(_ConfigModel):
    url: str = Field(..., pattern=r"^https?://")
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout_sec: Optional[float] = Field(None, gt=0)


ACTION_CONFIG_MODELS: dict[str, type[BaseModel]] = {
    "create_insight": CreateInsightConfig,
    "send_notification": SendNotificationConfig,
    "create_task": CreateTaskConfig,
    "webhook": WebhookConfig,
}


class ActionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, str_strip_whitespace=True)

    action_type: str = Field(..., min_length=1, max_length=64)
    action_config: Dict[str, Any] = Field(default_factory=dict)
    order: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def _typed_config(self) -> "ActionIn":
        model = ACTION_CONFIG_MODELS.get(self.action_type)
        if model is None:
            return self
        try:
            parsed = model.model_validate(self.action_config)
        except ValidationError as exc:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'action_config'}: {err['msg']}" for err in exc.errors()
            )
            raise ValueError(f"invalid action_config for '{self.action_type}': {details}") from exc
        self.action_config = parsed.model_dump(exclude_none=True)
        return self
