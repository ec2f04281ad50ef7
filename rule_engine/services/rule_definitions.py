"""
Tenant-authorized CRUD over rules.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from ..core.auth import CallerContext
from ..core.errors import AccessDenied, AgencyRequired, NotFound, ValidationError, pydantic_errors
from ..models.rule import Rule
from ..schemas.rule import RuleCreate, RuleUpdate
from .audit import CHANGE_CREATED, CHANGE_DELETED, CHANGE_UPDATED, AuditRecorder, rule_snapshot
from .rule_store import RuleStore


logger = logging.getLogger("rule_definitions")


def can_access(caller: CallerContext, agency_id: Optional[str]) -> bool:
    if caller.is_super_admin:
        return True
    return bool(caller.agency_id) and caller.agency_id == agency_id


def load_rule_for_caller(store: RuleStore, rule_id: str, caller: CallerContext) -> Rule:
    """Existence is checked before tenancy so a 403 never hides a 404."""
    rule = store.get_rule(rule_id)
    if rule is None:
        raise NotFound("Rule not found")
    if not can_access(caller, rule.agency_id):
        raise AccessDenied()
    return rule


def validate_payload(model: type[BaseModel], payload: Any, *, item: str) -> BaseModel:
    if isinstance(payload, model):
        return payload
    if not isinstance(payload, dict):
        raise ValidationError(f"Invalid {item} payload", errors=[{"item": item, "loc": [], "msg": "expected an object"}])
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {item} payload", errors=pydantic_errors(exc, item=item)) from exc


class RuleDefinitionService:
    def __init__(self, db: Session) -> None:
        self.store = RuleStore(db)
        self.audit = AuditRecorder(self.store)

    def list_rules(self, agency_id: Optional[str]) -> list[Rule]:
        if not agency_id:
            raise AgencyRequired()
        return self.store.list_rules(agency_id)

    def get_rule(self, rule_id: str, caller: CallerContext) -> Rule:
        return load_rule_for_caller(self.store, rule_id, caller)

    def create_rule(self, agency_id: Optional[str], actor_id: Optional[str], payload: Any) -> Rule:
        if not agency_id:
            raise AgencyRequired()
        data: RuleCreate = validate_payload(RuleCreate, payload, item="rule")
        rule = Rule(
            id=str(uuid.uuid4()),
            agency_id=agency_id,
            name=data.name,
            description=data.description,
            category=data.category,
            signal_types=list(data.signal_types),
            enabled=data.enabled,
            created_by=actor_id,
        )

        def _insert() -> Rule:
            self.store.add(rule)
            return rule

        self.audit.mutate_and_audit(
            rule_id=rule.id,
            change_type=CHANGE_CREATED,
            actor_id=actor_id,
            mutate=_insert,
            previous_state=None,
            new_state=rule_snapshot,
            summary=f"Created rule '{rule.name}'",
        )
        self.store.refresh(rule)
        logger.info("Rule created id=%s agency=%s actor=%s", rule.id, agency_id, actor_id)
        return rule

    def update_rule(self, rule_id: str, caller: CallerContext, payload: Any) -> Rule:
        rule = load_rule_for_caller(self.store, rule_id, caller)
        data: RuleUpdate = validate_payload(RuleUpdate, payload, item="rule")
        changes = data.model_dump(exclude_unset=True)
        before = rule_snapshot(rule)

        def _apply() -> Rule:
            for key, value in changes.items():
                setattr(rule, key, list(value) if key == "signal_types" else value)
            return rule

        self.audit.mutate_and_audit(
            rule_id=rule.id,
            change_type=CHANGE_UPDATED,
            actor_id=caller.user_id,
            mutate=_apply,
            previous_state=before,
            new_state=rule_snapshot,
            summary=f"Updated fields: {', '.join(sorted(changes)) or 'none'}",
        )
        self.store.refresh(rule)
        logger.info("Rule updated id=%s fields=%s actor=%s", rule.id, sorted(changes), caller.user_id)
        return rule

    def delete_rule(self, rule_id: str, caller: CallerContext) -> None:
        rule = load_rule_for_caller(self.store, rule_id, caller)
        before = rule_snapshot(rule)
        self.audit.mutate_and_audit(
            rule_id=rule.id,
            change_type=CHANGE_DELETED,
            actor_id=caller.user_id,
            mutate=lambda: self.store.delete_rule(rule),
            previous_state=before,
            summary=f"Deleted rule '{before['name']}'",
        )
        logger.info("Rule deleted id=%s actor=%s", rule_id, caller.user_id)
