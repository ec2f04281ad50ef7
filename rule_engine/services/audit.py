"""
Audit trail for rule and version mutations.

Every mutating code path goes through :meth:`AuditRecorder.mutate_and_audit`,
which runs the mutation and writes its audit row in one transaction. A
mutation therefore never commits without its audit row, and a failed audit
write rolls the mutation back.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, TypeVar

from ..models.rule import Rule
from ..models.rule_action import RuleAction
from ..models.rule_audit import RuleAudit
from ..models.rule_condition import RuleCondition
from ..models.rule_version import RuleVersion
from .rule_store import RuleStore

CHANGE_CREATED = "created"
CHANGE_UPDATED = "updated"
CHANGE_DELETED = "deleted"
CHANGE_PUBLISHED = "published"

T = TypeVar("T")

logger = logging.getLogger("rule_audit")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def rule_snapshot(rule: Rule) -> dict[str, Any]:
    return {
        "id": rule.id,
        "agency_id": rule.agency_id,
        "name": rule.name,
        "description": rule.description,
        "category": rule.category,
        "signal_types": list(rule.signal_types or []),
        "enabled": rule.enabled,
        "default_version_id": rule.default_version_id,
        "created_by": rule.created_by,
        "created_at": _iso(rule.created_at),
        "updated_at": _iso(rule.updated_at),
    }


def condition_snapshot(condition: RuleCondition) -> dict[str, Any]:
    return {
        "id": condition.id,
        "order": condition.order,
        "field_path": condition.field_path,
        "operator": condition.operator,
        "comparison_value": condition.comparison_value,
        "window_config": condition.window_config,
        "scope": condition.scope,
    }


def action_snapshot(action: RuleAction) -> dict[str, Any]:
    return {
        "id": action.id,
        "order": action.order,
        "action_type": action.action_type,
        "action_config": action.action_config,
    }


def version_snapshot(
    version: RuleVersion,
    conditions: Optional[list[RuleCondition]] = None,
    actions: Optional[list[RuleAction]] = None,
) -> dict[str, Any]:
    snap: dict[str, Any] = {
        "id": version.id,
        "rule_id": version.rule_id,
        "version": version.version,
        "status": version.status,
        "condition_logic": version.condition_logic,
        "threshold_config": version.threshold_config,
        "lifecycle_config": version.lifecycle_config,
        "anomaly_config": version.anomaly_config,
        "created_by": version.created_by,
        "created_at": _iso(version.created_at),
        "published_at": _iso(version.published_at),
    }
    if conditions is not None:
        snap["conditions"] = [condition_snapshot(c) for c in sorted(conditions, key=lambda c: c.order)]
    if actions is not None:
        snap["actions"] = [action_snapshot(a) for a in sorted(actions, key=lambda a: a.order)]
    return snap


class AuditRecorder:
    def __init__(self, store: RuleStore) -> None:
        self.store = store

    def record(
        self,
        *,
        rule_id: str,
        change_type: str,
        actor_id: Optional[str],
        previous_state: Optional[dict],
        new_state: Optional[dict],
        rule_version_id: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> RuleAudit:
        """Stage one audit row in the current transaction."""
        row = RuleAudit(
            rule_id=rule_id,
            rule_version_id=rule_version_id,
            actor_id=actor_id,
            change_type=change_type,
            change_summary=summary,
            previous_state=previous_state,
            new_state=new_state,
        )
        self.store.add(row)
        return row

    def mutate_and_audit(
        self,
        *,
        rule_id: str,
        change_type: str,
        actor_id: Optional[str],
        mutate: Callable[[], T],
        previous_state: Optional[dict] = None,
        new_state: Optional[Callable[[T], Optional[dict]]] = None,
        rule_version_id: Optional[str] = None,
        summary: Optional[str] = None,
    ) -> T:
        """Apply `mutate` and its audit row atomically.

        Deletions stage the audit row before the mutation so the trail keeps
        the last known state; other changes snapshot the post-mutation state
        through `new_state`.
        """
        try:
            if change_type == CHANGE_DELETED:
                self.record(
                    rule_id=rule_id,
                    change_type=change_type,
                    actor_id=actor_id,
                    previous_state=previous_state,
                    new_state=None,
                    rule_version_id=rule_version_id,
                    summary=summary,
                )
                self.store.flush()
                result = mutate()
            else:
                result = mutate()
                self.store.flush()
                self.record(
                    rule_id=rule_id,
                    change_type=change_type,
                    actor_id=actor_id,
                    previous_state=previous_state,
                    new_state=new_state(result) if new_state else None,
                    rule_version_id=rule_version_id,
                    summary=summary,
                )
            self.store.commit()
        except Exception:
            self.store.rollback()
            raise
        logger.info(
            "Audit recorded rule_id=%s version_id=%s change=%s actor=%s",
            rule_id,
            rule_version_id,
            change_type,
            actor_id,
        )
        return result
