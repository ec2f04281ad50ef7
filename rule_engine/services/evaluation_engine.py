"""
Rule evaluation against incoming signals.

Per signal: select candidate rules -> evaluate conditions -> combine ->
dispatch actions -> persist the evaluation record.

Lookbacks are anchored at the signal's ``occurred_at``, so out-of-order
delivery never lets a later signal count as history of an earlier one.

Each (rule, version, signal) unit writes exactly one `rule_evaluations` row.
The row is claimed (inserted and committed) before any action runs, so the
unique constraint decides which of several concurrent or repeated deliveries
dispatches the actions; the others get the existing row back.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models import utcnow
from ..models.rule import Rule
from ..models.rule_condition import RuleCondition
from ..models.rule_evaluation import (
    EVALUATION_STATUS_COMPLETED,
    EVALUATION_STATUS_NO_VERSION,
    EVALUATION_STATUS_PENDING,
    RuleEvaluation,
)
from ..models.rule_version import RuleVersion
from ..models.signal import Signal
from ..schemas.condition import parse_condition
from .action_dispatch import ActionDispatchRegistry, ActionInvocation, action_registry
from .operators import OperatorContext, get_operator
from .resolvers import HistoryLookup, HistoryLookupError, lookback_since, resolve_operand
from .rule_store import RuleStore


logger = logging.getLogger("evaluation_engine")


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return json.loads(json.dumps(value, default=str))


def signal_snapshot(signal: Signal) -> dict[str, Any]:
    return {
        "id": signal.id,
        "agency_id": signal.agency_id,
        "source": signal.source,
        "type": signal.type,
        "urgency": signal.urgency,
        "client_id": signal.client_id,
        "occurred_at": signal.occurred_at.isoformat() if signal.occurred_at else None,
        "payload": _jsonable(signal.payload or {}),
    }


def combine(logic: str, results: list[bool]) -> bool:
    """Zero conditions never match."""
    if not results:
        return False
    if (logic or "all").lower() == "any":
        return any(results)
    return all(results)


def _typed_condition(row: RuleCondition):
    return parse_condition(
        {
            "scope": row.scope,
            "field_path": row.field_path,
            "operator": row.operator,
            "comparison_value": row.comparison_value,
            "window_config": row.window_config,
            "order": row.order,
        }
    )


class EvaluationEngine:
    def __init__(
        self,
        db: Session,
        *,
        registry: Optional[ActionDispatchRegistry] = None,
        action_timeout_sec: Optional[float] = None,
        history_timeout_sec: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.db = db
        self.store = RuleStore(db)
        self.registry = registry or action_registry
        self.action_timeout_sec = action_timeout_sec or settings.action_dispatch_timeout_sec
        self.history_timeout_sec = history_timeout_sec or settings.history_lookup_timeout_sec
        self.clock = clock

    def candidate_rules(self, signal: Signal) -> list[Rule]:
        return [
            rule
            for rule in self.store.list_live_rules(signal.agency_id)
            if not rule.signal_types or signal.type in rule.signal_types
        ]

    def evaluate_signal(self, signal: Signal, context: Optional[dict] = None) -> list[RuleEvaluation]:
        rules = self.candidate_rules(signal)
        logger.info(
            "Evaluating signal id=%s agency=%s type=%s candidates=%s",
            signal.id,
            signal.agency_id,
            signal.type,
            len(rules),
        )
        return [self.evaluate_rule(rule, signal, context) for rule in rules]

    def _anchor(self, signal: Signal) -> datetime:
        """Lookbacks and elapsed-time operators are measured from when the signal occurred."""
        occurred_at = signal.occurred_at
        if occurred_at is None:
            return self.clock()
        if occurred_at.tzinfo is None:
            return occurred_at.replace(tzinfo=timezone.utc)
        return occurred_at.astimezone(timezone.utc)

    def evaluate_rule(self, rule: Rule, signal: Signal, context: Optional[dict] = None) -> RuleEvaluation:
        started = time.monotonic()
        context = dict(context or {})
        rule_id = rule.id
        version: Optional[RuleVersion] = (
            self.store.get_version(rule.default_version_id) if rule.default_version_id else None
        )
        if version is None or version.rule_id != rule_id:
            return RuleEvaluation(
                rule_id=rule_id,
                rule_version_id=rule.default_version_id,
                signal_id=signal.id,
                agency_id=signal.agency_id,
                matched=False,
                status=EVALUATION_STATUS_NO_VERSION,
                condition_results=[],
                actions_triggered=[],
            )
        version_id = version.id
        signal_id = signal.id

        existing = self.store.get_evaluation(rule_id, version_id, signal_id)
        if existing is not None:
            logger.info("Evaluation already recorded rule_id=%s version_id=%s signal_id=%s", rule_id, version_id, signal_id)
            return existing

        now = self._anchor(signal)
        snapshot = signal_snapshot(signal)
        lookup = HistoryLookup(
            self.db,
            agency_id=signal.agency_id,
            signal_type=signal.type,
            now=now,
            exclude_signal_id=signal_id,
            timeout_sec=self.history_timeout_sec,
            max_rows=settings.history_max_rows,
        )
        condition_results = [
            self._evaluate_condition(row, version, snapshot["payload"], context, lookup, now)
            for row in self.store.list_conditions(version_id)
        ]
        matched = combine(version.condition_logic, [r["passed"] for r in condition_results])

        evaluation = RuleEvaluation(
            rule_id=rule_id,
            rule_version_id=version_id,
            signal_id=signal_id,
            agency_id=signal.agency_id,
            matched=matched,
            status=EVALUATION_STATUS_PENDING,
            condition_results=condition_results,
            actions_triggered=[],
            evaluation_context={"signal": snapshot, "context": _jsonable(context)},
        )
        self.store.add(evaluation)
        try:
            self.store.commit()
        except IntegrityError:
            self.store.rollback()
            existing = self.store.get_evaluation(rule_id, version_id, signal_id)
            if existing is None:
                raise
            logger.info("Evaluation claimed elsewhere rule_id=%s version_id=%s signal_id=%s", rule_id, version_id, signal_id)
            return existing

        actions_triggered: list[dict] = []
        if matched:
            actions_triggered = self._dispatch_actions(rule_id, version_id, signal.agency_id, snapshot)
        evaluation.actions_triggered = actions_triggered
        evaluation.status = EVALUATION_STATUS_COMPLETED
        evaluation.duration_ms = int((time.monotonic() - started) * 1000)
        self.store.commit()
        self.store.refresh(evaluation)
        logger.info(
            "Rule evaluated rule_id=%s version_id=%s signal_id=%s matched=%s actions=%s",
            rule_id,
            version_id,
            signal_id,
            matched,
            [a["outcome"] for a in actions_triggered],
        )
        return evaluation

    def _evaluate_condition(
        self,
        row: RuleCondition,
        version: RuleVersion,
        payload: dict,
        context: dict,
        lookup: HistoryLookup,
        now: datetime,
    ) -> dict[str, Any]:
        result: dict[str, Any] = {
            "condition_id": row.id,
            "order": row.order,
            "field_path": row.field_path,
            "scope": row.scope,
            "operator": row.operator,
            "expected": _jsonable(row.comparison_value),
            "actual": None,
            "passed": False,
        }
        try:
            condition = _typed_condition(row)
        except PydanticValidationError as exc:
            result["error"] = f"invalid condition: {exc.errors()[0].get('msg')}"
            return result
        spec = get_operator(condition.operator)
        if spec is None:
            result["error"] = f"unknown operator '{row.operator}'"
            return result

        default_days = float(settings.default_lookback_days)
        try:
            resolution = resolve_operand(
                condition,
                payload=payload,
                context=context,
                lookup=lookup,
                now=now,
                default_days=default_days,
            )
        except HistoryLookupError as exc:
            result["error"] = str(exc)
            return result
        if not resolution.found and not spec.accepts_missing:
            result["error"] = resolution.note
            return result
        actual = resolution.value if resolution.found else None
        result["actual"] = _jsonable(actual)

        def _history(window_days: Optional[float]) -> list:
            if window_days:
                since = now - timedelta(days=float(window_days))
            else:
                since = lookback_since(now, condition.window_config, default_days)
            return lookup.values(condition.field_path, since)

        previous = context.get("previous")
        ctx = OperatorContext(
            field_path=condition.field_path,
            now=now,
            scope_data=context if condition.scope == "context" else payload,
            previous=previous if isinstance(previous, dict) else {},
            threshold_config=version.threshold_config or {},
            lifecycle_config=version.lifecycle_config or {},
            anomaly_config=version.anomaly_config or {},
            history_loader=_history,
        )
        try:
            result["passed"] = bool(spec.fn(actual, condition.comparison_value, ctx))
        except HistoryLookupError as exc:
            result["error"] = str(exc)
        except Exception as exc:
            logger.debug("Condition %s raised %s", row.id, exc)
            result["error"] = f"{exc.__class__.__name__}: {exc}"
        return result

    def _dispatch_actions(self, rule_id: str, version_id: str, agency_id: str, snapshot: dict) -> list[dict]:
        outcomes: list[dict] = []
        for action in self.store.list_actions(version_id):
            invocation = ActionInvocation(
                rule_id=rule_id,
                rule_version_id=version_id,
                action_id=action.id,
                agency_id=agency_id,
                signal=snapshot,
            )
            outcome = self.registry.dispatch(
                action.action_type,
                action.action_config or {},
                invocation,
                timeout_sec=self.action_timeout_sec,
            )
            outcomes.append(
                {
                    "action_id": action.id,
                    "order": action.order,
                    "action_type": action.action_type,
                    "outcome": outcome.outcome,
                    "result": _jsonable(outcome.result),
                    "error": outcome.error,
                    "duration_ms": outcome.duration_ms,
                }
            )
        return outcomes
