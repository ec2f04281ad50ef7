import threading
import time
from datetime import timedelta

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rule_engine.core.auth import CallerContext
from rule_engine.models import Base, utcnow
from rule_engine.models.rule_condition import RuleCondition
from rule_engine.models.rule_evaluation import RuleEvaluation
from rule_engine.models.signal import Signal
from rule_engine.services.action_dispatch import ActionDispatchRegistry
from rule_engine.services.evaluation_engine import EvaluationEngine, combine
from rule_engine.services.rule_definitions import RuleDefinitionService
from rule_engine.services.rule_versioning import RuleVersioningService
from rule_engine.services.signal_ingest import ingest_signal


def _make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    return SessionLocal()


TENANT_A = CallerContext(agency_id="A", user_id="user-a")


class _Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, dict]] = []
        self._lock = threading.Lock()

    def handler(self, name: str):
        def _handle(config, invocation):
            with self._lock:
                self.calls.append((name, dict(config)))
            return {"ok": name}

        return _handle


def _registry(recorder: _Recorder) -> ActionDispatchRegistry:
    registry = ActionDispatchRegistry()
    for name in ("create_insight", "send_notification", "create_task"):
        registry.register(name, recorder.handler(name))
    return registry


def _published_rule(db, *, conditions, actions=None, logic="all", signal_types=None, agency="A"):
    caller = CallerContext(agency_id=agency, user_id=f"user-{agency.lower()}")
    rule = RuleDefinitionService(db).create_rule(
        agency, caller.user_id, {"name": "High churn risk", "signalTypes": signal_types or []}
    )
    service = RuleVersioningService(db)
    version = service.create_rule_version(
        rule.id,
        caller,
        {
            "conditionLogic": logic,
            "conditions": conditions,
            "actions": actions if actions is not None else [{"actionType": "create_insight", "actionConfig": {"title": "Churn"}}],
        },
    )
    service.publish_rule_version(version.id, caller)
    db.refresh(rule)
    return rule


def _signal(db, signal_id="sig-1", *, type="low_sessions", payload=None, agency="A", age=timedelta(0)):
    signal = Signal(
        id=signal_id,
        agency_id=agency,
        source="internal",
        type=type,
        payload=payload or {},
        occurred_at=utcnow() - age,
    )
    db.add(signal)
    db.commit()
    return signal


def test_low_sessions_signal_matches_and_dispatches_once():
    db = _make_session()
    recorder = _Recorder()
    rule = _published_rule(db, conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}])
    signal = _signal(db, payload={"sessions": 10})

    evaluations = EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(signal)

    assert len(evaluations) == 1
    evaluation = evaluations[0]
    assert evaluation.matched is True
    assert evaluation.status == "completed"
    assert evaluation.rule_id == rule.id
    assert evaluation.rule_version_id == rule.default_version_id
    assert evaluation.condition_results[0]["passed"] is True
    assert evaluation.condition_results[0]["actual"] == 10
    assert [a["outcome"] for a in evaluation.actions_triggered] == ["succeeded"]
    assert evaluation.evaluation_context["signal"]["payload"] == {"sessions": 10}
    assert evaluation.duration_ms is not None
    assert recorder.calls == [("create_insight", {"title": "Churn", "severity": "normal"})]
    assert db.query(RuleEvaluation).count() == 1


def test_reevaluating_same_signal_is_idempotent():
    db = _make_session()
    recorder = _Recorder()
    _published_rule(db, conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}])
    signal = _signal(db, payload={"sessions": 10})
    engine = EvaluationEngine(db, registry=_registry(recorder))

    first = engine.evaluate_signal(signal)[0]
    second = engine.evaluate_signal(signal)[0]

    assert first.id == second.id
    assert db.query(RuleEvaluation).count() == 1
    assert len(recorder.calls) == 1


def test_unmatched_evaluation_is_still_recorded():
    db = _make_session()
    recorder = _Recorder()
    _published_rule(db, conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}])
    signal = _signal(db, payload={"sessions": 80})

    evaluation = EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(signal)[0]

    assert evaluation.matched is False
    assert evaluation.actions_triggered == []
    assert recorder.calls == []
    assert db.query(RuleEvaluation).count() == 1


def test_combine_logic():
    assert combine("all", [True, True]) is True
    assert combine("all", [True, False]) is False
    assert combine("any", [False, True]) is True
    assert combine("any", [False, False]) is False
    assert combine("all", []) is False
    assert combine("any", []) is False


def test_all_and_any_logic_end_to_end():
    db = _make_session()
    recorder = _Recorder()
    conditions = [
        {"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50},
        {"fieldPath": "plan", "operator": "eq", "comparisonValue": "enterprise"},
    ]
    all_rule = _published_rule(db, conditions=conditions, logic="all")
    any_rule = _published_rule(db, conditions=conditions, logic="any")
    signal = _signal(db, payload={"sessions": 10, "plan": "trial"})

    results = {e.rule_id: e for e in EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(signal)}

    assert results[all_rule.id].matched is False
    assert results[any_rule.id].matched is True
    assert [r["passed"] for r in results[all_rule.id].condition_results] == [True, False]


def test_failed_action_does_not_block_later_actions():
    db = _make_session()
    recorder = _Recorder()
    registry = _registry(recorder)

    def _boom(config, invocation):
        raise RuntimeError("downstream unavailable")

    registry.register("create_insight", _boom)
    _published_rule(
        db,
        conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}],
        actions=[
            {"actionType": "create_insight", "actionConfig": {"title": "Churn"}},
            {"actionType": "unregistered_thing", "actionConfig": {}},
            {"actionType": "create_task", "actionConfig": {"title": "Call client"}},
        ],
    )
    signal = _signal(db, payload={"sessions": 1})

    evaluation = EvaluationEngine(db, registry=registry).evaluate_signal(signal)[0]

    outcomes = [(a["action_type"], a["outcome"]) for a in evaluation.actions_triggered]
    assert outcomes == [("create_insight", "failed"), ("unregistered_thing", "failed"), ("create_task", "succeeded")]
    assert "downstream unavailable" in evaluation.actions_triggered[0]["error"]
    assert [o for o, _ in recorder.calls] == ["create_task"]


def test_slow_action_times_out_and_is_recorded():
    db = _make_session()
    recorder = _Recorder()
    registry = _registry(recorder)
    registry.register("create_insight", lambda config, invocation: time.sleep(1.0))
    _published_rule(
        db,
        conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}],
        actions=[
            {"actionType": "create_insight", "actionConfig": {"title": "Churn"}},
            {"actionType": "create_task", "actionConfig": {"title": "Call client"}},
        ],
    )
    signal = _signal(db, payload={"sessions": 1})

    evaluation = EvaluationEngine(db, registry=registry, action_timeout_sec=0.05).evaluate_signal(signal)[0]

    assert [a["outcome"] for a in evaluation.actions_triggered] == ["timeout", "succeeded"]
    registry.shutdown()


def test_missing_field_and_zero_conditions_do_not_match():
    db = _make_session()
    recorder = _Recorder()
    missing = _published_rule(db, conditions=[{"fieldPath": "metrics.sessions", "operator": "lt", "comparisonValue": 5}])
    empty = _published_rule(db, conditions=[])
    signal = _signal(db, payload={"other": 1})

    results = {e.rule_id: e for e in EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(signal)}

    assert results[missing.id].matched is False
    assert "not found" in results[missing.id].condition_results[0]["error"]
    assert results[empty.id].matched is False
    assert results[empty.id].condition_results == []


def test_unknown_operator_in_stored_condition_is_false():
    db = _make_session()
    recorder = _Recorder()
    rule = _published_rule(db, conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}])
    row = db.query(RuleCondition).filter(RuleCondition.rule_version_id == rule.default_version_id).one()
    row.operator = "retired_operator"
    db.commit()
    signal = _signal(db, payload={"sessions": 10})

    evaluation = EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(signal)[0]

    assert evaluation.matched is False
    assert evaluation.condition_results[0]["passed"] is False
    assert "retired_operator" in evaluation.condition_results[0]["error"]


def test_candidates_filtered_by_signal_type_enabled_and_tenant():
    db = _make_session()
    recorder = _Recorder()
    conditions = [{"fieldPath": "sessions", "operator": "exists"}]
    typed = _published_rule(db, conditions=conditions, signal_types=["low_sessions"])
    other_type = _published_rule(db, conditions=conditions, signal_types=["invoice_overdue"])
    disabled = _published_rule(db, conditions=conditions)
    RuleDefinitionService(db).update_rule(disabled.id, TENANT_A, {"enabled": False})
    _published_rule(db, conditions=conditions, agency="B")
    RuleDefinitionService(db).create_rule("A", "user-a", {"name": "draft only"})
    signal = _signal(db, payload={"sessions": 3})

    evaluations = EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(signal)

    assert [e.rule_id for e in evaluations] == [typed.id]
    assert other_type.id not in {e.rule_id for e in evaluations}


def test_rule_without_published_version_is_not_persisted():
    db = _make_session()
    rule = RuleDefinitionService(db).create_rule("A", "user-a", {"name": "draft only"})
    signal = _signal(db, payload={"sessions": 3})

    evaluation = EvaluationEngine(db, registry=ActionDispatchRegistry()).evaluate_rule(rule, signal)

    assert evaluation.status == "no_published_version"
    assert evaluation.matched is False
    assert db.query(RuleEvaluation).count() == 0


def test_history_and_aggregated_scopes_look_back_over_past_signals():
    db = _make_session()
    recorder = _Recorder()
    _signal(db, "old", payload={"sessions": 500}, age=timedelta(days=10))
    _signal(db, "p1", payload={"sessions": 120}, age=timedelta(days=2))
    _signal(db, "p2", payload={"sessions": 80}, age=timedelta(days=1))
    _signal(db, "other-type", type="invoice_overdue", payload={"sessions": 999}, age=timedelta(hours=1))
    history_rule = _published_rule(
        db,
        conditions=[
            {
                "fieldPath": "sessions",
                "operator": "gte",
                "comparisonValue": 100,
                "scope": "history",
                "windowConfig": {"days": 7, "pick": "earliest"},
            }
        ],
    )
    aggregated_rule = _published_rule(
        db,
        conditions=[
            {
                "fieldPath": "sessions",
                "operator": "eq",
                "comparisonValue": 210,
                "scope": "aggregated",
                "windowConfig": {"days": 7, "aggregation": "sum", "includeCurrent": True},
            }
        ],
    )
    current = _signal(db, "now", payload={"sessions": 10})

    results = {e.rule_id: e for e in EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(current)}

    assert results[history_rule.id].matched is True
    assert results[history_rule.id].condition_results[0]["actual"] == 120
    assert results[aggregated_rule.id].matched is True
    assert results[aggregated_rule.id].condition_results[0]["actual"] == 210


def test_crossing_and_context_scope_use_previous_values():
    db = _make_session()
    recorder = _Recorder()
    _signal(db, "p1", payload={"sessions": 60}, age=timedelta(hours=3))
    crossing = _published_rule(
        db, conditions=[{"fieldPath": "sessions", "operator": "crosses_below", "comparisonValue": 50}]
    )
    context_rule = _published_rule(
        db, conditions=[{"fieldPath": "account.tier", "operator": "in", "comparisonValue": ["gold"], "scope": "context"}]
    )
    current = _signal(db, "now", payload={"sessions": 40})

    engine = EvaluationEngine(db, registry=_registry(recorder))
    results = {e.rule_id: e for e in engine.evaluate_signal(current, context={"account": {"tier": "gold"}})}

    assert results[crossing.id].matched is True
    assert results[context_rule.id].matched is True
    assert results[context_rule.id].evaluation_context["context"] == {"account": {"tier": "gold"}}


def test_ingest_signal_stores_and_evaluates_once_per_delivery():
    db = _make_session()
    recorder = _Recorder()
    _published_rule(db, conditions=[{"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}])
    payload = {"id": "evt-42", "type": "low_sessions", "payload": {"sessions": 10}}

    signal, evaluations = ingest_signal(db, payload, TENANT_A, registry=_registry(recorder))
    _, again = ingest_signal(db, payload, TENANT_A, registry=_registry(recorder))

    assert signal.id == "evt-42"
    assert signal.agency_id == "A"
    assert evaluations[0].matched is True
    assert again[0].id == evaluations[0].id
    assert len(recorder.calls) == 1
    assert db.query(Signal).count() == 1


def test_lookback_is_anchored_at_signal_time_for_out_of_order_delivery():
    db = _make_session()
    recorder = _Recorder()
    _signal(db, "before", payload={"sessions": 500}, age=timedelta(days=2))
    _signal(db, "later", payload={"sessions": 999}, age=timedelta(hours=1))
    latest = _published_rule(
        db,
        conditions=[
            {"fieldPath": "sessions", "operator": "eq", "comparisonValue": 500, "scope": "history", "windowConfig": {"days": 7}}
        ],
    )
    counted = _published_rule(
        db,
        conditions=[
            {
                "fieldPath": "sessions",
                "operator": "eq",
                "comparisonValue": 1,
                "scope": "aggregated",
                "windowConfig": {"days": 7, "aggregation": "count"},
            }
        ],
    )
    older = _signal(db, "older", payload={"sessions": 10}, age=timedelta(days=1))

    results = {e.rule_id: e for e in EvaluationEngine(db, registry=_registry(recorder)).evaluate_signal(older)}

    assert results[latest.id].condition_results[0]["actual"] == 500
    assert results[latest.id].matched is True
    assert results[counted.id].condition_results[0]["actual"] == 1
    assert results[counted.id].matched is True


def test_signal_at_window_start_sees_no_later_history():
    db = _make_session()
    recorder = _Recorder()
    _signal(db, "later", payload={"sessions": 999}, age=timedelta(hours=1))
    rule = _published_rule(
        db,
        conditions=[
            {"fieldPath": "sessions", "operator": "eq", "comparisonValue": 999, "scope": "history", "windowConfig": {"days": 7}}
        ],
    )
    older = _signal(db, "older", payload={"sessions": 10}, age=timedelta(days=1))

    evaluation = EvaluationEngine(db, registry=_registry(recorder)).evaluate_rule(rule, older)

    assert evaluation.matched is False
    assert evaluation.condition_results[0]["actual"] is None
    assert "no values" in evaluation.condition_results[0]["error"]
