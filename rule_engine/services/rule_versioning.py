"""
Rule version lifecycle: draft creation, publishing and ordered reads.

A version is created as a draft together with its conditions and actions in
a single transaction. Version numbers come from ``max(version) + 1``; the
unique (rule_id, version) constraint turns a concurrent collision into an
IntegrityError, after which allocation is retried.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.auth import CallerContext
from ..core.config import settings
from ..core.errors import AccessDenied, NotFound, ValidationError, VersionConflict, pydantic_errors
from ..core.pagination import parse_limit
from ..models import utcnow
from ..models.rule import Rule
from ..models.rule_action import RuleAction
from ..models.rule_audit import RuleAudit
from ..models.rule_condition import RuleCondition
from ..models.rule_evaluation import RuleEvaluation
from ..models.rule_version import VERSION_STATUS_DRAFT, VERSION_STATUS_PUBLISHED, RuleVersion
from ..schemas.action import ActionIn
from ..schemas.condition import parse_condition
from ..schemas.rule_version import RuleVersionCreate
from .audit import CHANGE_CREATED, CHANGE_PUBLISHED, AuditRecorder, version_snapshot
from .rule_definitions import can_access, load_rule_for_caller
from .rule_store import RuleStore


logger = logging.getLogger("rule_versioning")


@dataclass
class VersionDraft:
    """A fully validated version payload with every `order` resolved."""

    config: RuleVersionCreate
    conditions: list[tuple[int, Any]] = field(default_factory=list)
    actions: list[tuple[int, ActionIn]] = field(default_factory=list)


def _items(payload: dict, key: str, errors: list[dict]) -> list:
    raw = payload.get(key)
    if raw is None:
        return []
    if not isinstance(raw, list):
        errors.append({"item": key.rstrip("s"), "loc": [key], "msg": "expected a list"})
        return []
    return raw


def _resolve_orders(parsed: list[tuple[int, Any]], item: str, errors: list[dict]) -> list[tuple[int, Any]]:
    seen: dict[int, int] = {}
    out: list[tuple[int, Any]] = []
    for index, model in parsed:
        order = model.order if model.order is not None else index
        if order in seen:
            errors.append(
                {
                    "item": item,
                    "index": index,
                    "loc": ["order"],
                    "msg": f"duplicate order {order} (also used by {item} {seen[order]})",
                }
            )
            continue
        seen[order] = index
        out.append((order, model))
    return sorted(out, key=lambda pair: pair[0])


def validate_version_payload(payload: Any) -> VersionDraft:
    """Validate version settings and every condition/action item.

    All problems are collected before raising so the caller gets one
    itemized error list.
    """
    if not isinstance(payload, dict):
        raise ValidationError(
            "Invalid rule version payload",
            errors=[{"item": "version", "loc": [], "msg": "expected an object"}],
        )
    errors: list[dict] = []
    config: Optional[RuleVersionCreate] = None
    try:
        config = RuleVersionCreate.model_validate(
            {k: v for k, v in payload.items() if k not in {"conditions", "actions"}}
        )
    except PydanticValidationError as exc:
        errors.extend(pydantic_errors(exc, item="version"))

    conditions: list[tuple[int, Any]] = []
    for index, raw in enumerate(_items(payload, "conditions", errors)):
        try:
            conditions.append((index, parse_condition(raw)))
        except PydanticValidationError as exc:
            errors.extend(pydantic_errors(exc, item="condition", index=index))

    actions: list[tuple[int, ActionIn]] = []
    for index, raw in enumerate(_items(payload, "actions", errors)):
        try:
            actions.append((index, ActionIn.model_validate(raw)))
        except PydanticValidationError as exc:
            errors.extend(pydantic_errors(exc, item="action", index=index))

    conditions = _resolve_orders(conditions, "condition", errors)
    actions = _resolve_orders(actions, "action", errors)
    if errors or config is None:
        raise ValidationError("Invalid rule version payload", errors=errors)
    return VersionDraft(config=config, conditions=conditions, actions=actions)


def _dump(model) -> Optional[dict]:
    if model is None:
        return None
    return model.model_dump(exclude_none=True)


class RuleVersioningService:
    def __init__(self, db: Session) -> None:
        self.store = RuleStore(db)
        self.audit = AuditRecorder(self.store)

    def _build_rows(
        self, rule_id: str, draft: VersionDraft, number: int, actor_id: Optional[str]
    ) -> tuple[RuleVersion, list[RuleCondition], list[RuleAction]]:
        version = RuleVersion(
            id=str(uuid.uuid4()),
            rule_id=rule_id,
            version=number,
            status=VERSION_STATUS_DRAFT,
            condition_logic=draft.config.condition_logic,
            threshold_config=_dump(draft.config.threshold_config),
            lifecycle_config=_dump(draft.config.lifecycle_config),
            anomaly_config=_dump(draft.config.anomaly_config),
            created_by=actor_id,
        )
        conditions = [
            RuleCondition(
                id=str(uuid.uuid4()),
                rule_version_id=version.id,
                order=order,
                field_path=cond.field_path,
                operator=cond.operator,
                comparison_value=cond.comparison_value,
                window_config=_dump(cond.window_config),
                scope=cond.scope,
            )
            for order, cond in draft.conditions
        ]
        actions = [
            RuleAction(
                id=str(uuid.uuid4()),
                rule_version_id=version.id,
                order=order,
                action_type=action.action_type,
                action_config=dict(action.action_config),
            )
            for order, action in draft.actions
        ]
        return version, conditions, actions

    def list_rule_versions(self, rule_id: str, caller: CallerContext) -> list[RuleVersion]:
        rule = load_rule_for_caller(self.store, rule_id, caller)
        return self.store.list_versions(rule.id)

    def create_rule_version(self, rule_id: str, caller: CallerContext, payload: Any) -> RuleVersion:
        rule = load_rule_for_caller(self.store, rule_id, caller)
        rule_id = rule.id
        draft = validate_version_payload(payload)
        attempts = max(1, int(settings.version_allocation_retries))
        for attempt in range(1, attempts + 1):
            number = self.store.max_version(rule_id) + 1
            version, conditions, actions = self._build_rows(rule_id, draft, number, caller.user_id)

            def _insert() -> RuleVersion:
                self.store.add(version, *conditions, *actions)
                return version

            try:
                self.audit.mutate_and_audit(
                    rule_id=rule_id,
                    change_type=CHANGE_CREATED,
                    actor_id=caller.user_id,
                    mutate=_insert,
                    previous_state=None,
                    new_state=lambda v: version_snapshot(v, conditions, actions),
                    rule_version_id=version.id,
                    summary=f"Created version {number}",
                )
            except IntegrityError:
                logger.warning(
                    "Version allocation conflict rule_id=%s version=%s attempt=%s/%s",
                    rule_id,
                    number,
                    attempt,
                    attempts,
                )
                continue
            self.store.refresh(version)
            logger.info(
                "Rule version created rule_id=%s version=%s conditions=%s actions=%s",
                rule_id,
                number,
                len(conditions),
                len(actions),
            )
            return version
        raise VersionConflict(f"Could not allocate a version number after {attempts} attempts")

    def publish_rule_version(self, version_id: str, caller: CallerContext) -> RuleVersion:
        version = self.store.get_version(version_id)
        if version is None:
            raise NotFound("Version not found")
        rule: Optional[Rule] = self.store.get_rule(version.rule_id)
        if rule is None:
            raise NotFound("Rule not found")
        if not can_access(caller, rule.agency_id):
            raise AccessDenied()
        before = {"version": version_snapshot(version), "default_version_id": rule.default_version_id}

        def _publish() -> RuleVersion:
            version.status = VERSION_STATUS_PUBLISHED
            if version.published_at is None:
                version.published_at = utcnow()
            rule.default_version_id = version.id
            return version

        self.audit.mutate_and_audit(
            rule_id=rule.id,
            change_type=CHANGE_PUBLISHED,
            actor_id=caller.user_id,
            mutate=_publish,
            previous_state=before,
            new_state=lambda v: {"version": version_snapshot(v), "default_version_id": rule.default_version_id},
            rule_version_id=version.id,
            summary=f"Published version {version.version}",
        )
        self.store.refresh(version)
        logger.info("Rule version published rule_id=%s version=%s id=%s", rule.id, version.version, version.id)
        return version

    def _load_version_for_caller(self, version_id: str, caller: CallerContext) -> RuleVersion:
        version = self.store.get_version(version_id)
        if version is None:
            raise NotFound("Version not found")
        load_rule_for_caller(self.store, version.rule_id, caller)
        return version

    def list_rule_conditions(self, version_id: str, caller: CallerContext) -> list[RuleCondition]:
        version = self._load_version_for_caller(version_id, caller)
        return self.store.list_conditions(version.id)

    def list_rule_actions(self, version_id: str, caller: CallerContext) -> list[RuleAction]:
        version = self._load_version_for_caller(version_id, caller)
        return self.store.list_actions(version.id)

    def list_rule_audits(self, rule_id: str, caller: CallerContext) -> list[RuleAudit]:
        rule = load_rule_for_caller(self.store, rule_id, caller)
        return self.store.list_audits(rule.id)

    def list_rule_evaluations(self, rule_id: str, caller: CallerContext, limit: Any = None) -> list[RuleEvaluation]:
        rule = load_rule_for_caller(self.store, rule_id, caller)
        return self.store.list_evaluations(rule.id, parse_limit(limit))
