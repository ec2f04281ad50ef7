"""
Row-level persistence for rules and their logs.

`RuleStore` wraps a SQLAlchemy session with the queries the services need.
It holds no business rules: authorization, validation and auditing live in
the services built on top of it.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models.rule import Rule
from ..models.rule_action import RuleAction
from ..models.rule_audit import RuleAudit
from ..models.rule_condition import RuleCondition
from ..models.rule_evaluation import RuleEvaluation
from ..models.rule_version import RuleVersion
from ..models.signal import Signal


class RuleStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # Transaction helpers

    def add(self, *rows) -> None:
        self.db.add_all(rows)

    def flush(self) -> None:
        self.db.flush()

    def commit(self) -> None:
        self.db.commit()

    def rollback(self) -> None:
        self.db.rollback()

    def refresh(self, row) -> None:
        self.db.refresh(row)

    # Rules

    def get_rule(self, rule_id: str) -> Optional[Rule]:
        return self.db.get(Rule, rule_id)

    def list_rules(self, agency_id: str) -> list[Rule]:
        return (
            self.db.query(Rule)
            .filter(Rule.agency_id == agency_id)
            .order_by(Rule.created_at.asc(), Rule.id.asc())
            .all()
        )

    def list_live_rules(self, agency_id: str) -> list[Rule]:
        return (
            self.db.query(Rule)
            .filter(
                Rule.agency_id == agency_id,
                Rule.enabled == True,  # noqa: E712
                Rule.default_version_id.isnot(None),
            )
            .order_by(Rule.created_at.asc(), Rule.id.asc())
            .all()
        )

    def delete_rule(self, rule: Rule) -> None:
        """Delete a rule with its versions, conditions and actions. Logs are kept."""
        version_ids = [row[0] for row in self.db.query(RuleVersion.id).filter(RuleVersion.rule_id == rule.id).all()]
        if version_ids:
            self.db.query(RuleCondition).filter(RuleCondition.rule_version_id.in_(version_ids)).delete(
                synchronize_session=False
            )
            self.db.query(RuleAction).filter(RuleAction.rule_version_id.in_(version_ids)).delete(
                synchronize_session=False
            )
            self.db.query(RuleVersion).filter(RuleVersion.id.in_(version_ids)).delete(synchronize_session=False)
        self.db.delete(rule)

    # Versions

    def get_version(self, version_id: str) -> Optional[RuleVersion]:
        return self.db.get(RuleVersion, version_id)

    def list_versions(self, rule_id: str) -> list[RuleVersion]:
        return (
            self.db.query(RuleVersion)
            .filter(RuleVersion.rule_id == rule_id)
            .order_by(RuleVersion.version.asc())
            .all()
        )

    def max_version(self, rule_id: str) -> int:
        current = self.db.query(func.max(RuleVersion.version)).filter(RuleVersion.rule_id == rule_id).scalar()
        return int(current or 0)

    def list_conditions(self, version_id: str) -> list[RuleCondition]:
        return (
            self.db.query(RuleCondition)
            .filter(RuleCondition.rule_version_id == version_id)
            .order_by(RuleCondition.order.asc())
            .all()
        )

    def list_actions(self, version_id: str) -> list[RuleAction]:
        return (
            self.db.query(RuleAction)
            .filter(RuleAction.rule_version_id == version_id)
            .order_by(RuleAction.order.asc())
            .all()
        )

    # Logs

    def list_audits(self, rule_id: str) -> list[RuleAudit]:
        return (
            self.db.query(RuleAudit)
            .filter(RuleAudit.rule_id == rule_id)
            .order_by(RuleAudit.created_at.asc(), RuleAudit.id.asc())
            .all()
        )

    def list_evaluations(self, rule_id: str, limit: int) -> list[RuleEvaluation]:
        return (
            self.db.query(RuleEvaluation)
            .filter(RuleEvaluation.rule_id == rule_id)
            .order_by(RuleEvaluation.created_at.desc(), RuleEvaluation.id.desc())
            .limit(limit)
            .all()
        )

    def get_evaluation(self, rule_id: str, version_id: str, signal_id: str) -> Optional[RuleEvaluation]:
        return (
            self.db.query(RuleEvaluation)
            .filter(
                RuleEvaluation.rule_id == rule_id,
                RuleEvaluation.rule_version_id == version_id,
                RuleEvaluation.signal_id == signal_id,
            )
            .first()
        )

    # Signals

    def get_signal(self, signal_id: str) -> Optional[Signal]:
        return self.db.get(Signal, signal_id)
