import threading
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from rule_engine.core.auth import CallerContext
from rule_engine.core.config import settings
from rule_engine.core.errors import AccessDenied, NotFound, ValidationError, VersionConflict
from rule_engine.models import Base
from rule_engine.models.rule_audit import RuleAudit
from rule_engine.models.rule_condition import RuleCondition
from rule_engine.models.rule_evaluation import RuleEvaluation
from rule_engine.models.rule_version import RuleVersion
from rule_engine.services.rule_definitions import RuleDefinitionService
from rule_engine.services.rule_versioning import RuleVersioningService, validate_version_payload


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
TENANT_B = CallerContext(agency_id="B", user_id="user-b")

SESSIONS_LT_50 = {"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50}


def _rule(db, agency="A"):
    return RuleDefinitionService(db).create_rule(agency, f"user-{agency.lower()}", {"name": "High churn risk"})


def test_sequential_versions_are_contiguous():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)

    versions = [service.create_rule_version(rule.id, TENANT_A, {}) for _ in range(4)]

    assert [v.version for v in versions] == [1, 2, 3, 4]
    assert all(v.status == "draft" for v in versions)
    assert [v.version for v in service.list_rule_versions(rule.id, TENANT_A)] == [1, 2, 3, 4]


def test_concurrent_versions_never_collide(tmp_path: Path, monkeypatch):
    monkeypatch.setattr(settings, "version_allocation_retries", 20)
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'versions.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)
    with SessionLocal() as db:
        rule_id = _rule(db).id

    workers = 6
    barrier = threading.Barrier(workers)
    errors: list[Exception] = []

    def _worker():
        with SessionLocal() as db:
            barrier.wait()
            try:
                RuleVersioningService(db).create_rule_version(rule_id, TENANT_A, {"conditions": [SESSIONS_LT_50]})
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    with SessionLocal() as db:
        numbers = sorted(v.version for v in db.query(RuleVersion).filter(RuleVersion.rule_id == rule_id))
        assert numbers == list(range(1, workers + 1))
        assert db.query(RuleCondition).count() == workers
        assert db.query(RuleAudit).filter(RuleAudit.rule_version_id.isnot(None)).count() == workers
    engine.dispose()


def test_conditions_without_order_take_array_position():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)
    payload = {
        "conditionLogic": "any",
        "conditions": [
            {"fieldPath": "sessions", "operator": "lt", "comparisonValue": 50},
            {"fieldPath": "plan", "operator": "eq", "comparisonValue": "trial", "scope": "context"},
            {"fieldPath": "status", "operator": "exists"},
        ],
        "actions": [
            {"actionType": "create_insight", "actionConfig": {"title": "Churn risk"}},
            {"actionType": "send_notification", "actionConfig": {"message": "Heads up"}, "order": 5},
        ],
    }

    version = service.create_rule_version(rule.id, TENANT_A, payload)

    conditions = service.list_rule_conditions(version.id, TENANT_A)
    assert [c.order for c in conditions] == [0, 1, 2]
    assert [c.field_path for c in conditions] == ["sessions", "plan", "status"]
    assert [c.scope for c in conditions] == ["signal", "context", "signal"]
    actions = service.list_rule_actions(version.id, TENANT_A)
    assert [(a.order, a.action_type) for a in actions] == [(0, "create_insight"), (5, "send_notification")]
    assert actions[0].action_config["severity"] == "normal"
    assert version.condition_logic == "any"


def test_version_creation_is_audited_with_contents():
    db = _make_session()
    rule = _rule(db)
    version = RuleVersioningService(db).create_rule_version(rule.id, TENANT_A, {"conditions": [SESSIONS_LT_50]})

    audit = db.query(RuleAudit).filter(RuleAudit.rule_version_id == version.id).one()
    assert audit.change_type == "created"
    assert audit.previous_state is None
    assert audit.new_state["version"] == 1
    assert audit.new_state["conditions"][0]["operator"] == "lt"


def test_invalid_item_aborts_whole_version():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)
    payload = {
        "conditions": [
            SESSIONS_LT_50,
            {"fieldPath": "sessions", "operator": "bogus_op", "comparisonValue": 1},
            {"fieldPath": "revenue", "operator": "gt", "scope": "aggregated", "windowConfig": {"days": 7}},
        ],
        "actions": [{"actionType": "webhook", "actionConfig": {"url": "ftp://nope"}}],
    }

    with pytest.raises(ValidationError) as excinfo:
        service.create_rule_version(rule.id, TENANT_A, payload)

    errors = excinfo.value.errors
    assert {(e["item"], e.get("index")) for e in errors} == {("condition", 1), ("condition", 2), ("action", 0)}
    assert db.query(RuleVersion).count() == 0
    assert db.query(RuleCondition).count() == 0
    assert db.query(RuleAudit).filter(RuleAudit.rule_version_id.isnot(None)).count() == 0


def test_duplicate_orders_and_bad_version_config_rejected():
    with pytest.raises(ValidationError) as excinfo:
        validate_version_payload(
            {
                "conditionLogic": "most",
                "thresholdConfig": {"baselineType": "median"},
                "conditions": [dict(SESSIONS_LT_50, order=1), dict(SESSIONS_LT_50, order=1)],
            }
        )
    errors = excinfo.value.errors
    assert any(e["item"] == "condition" and e["loc"] == ["order"] and e["index"] == 1 for e in errors)
    assert any(e["item"] == "version" and e["loc"][0] == "conditionLogic" for e in errors)
    assert any(e["item"] == "version" and e["loc"][0] == "thresholdConfig" for e in errors)
    with pytest.raises(ValidationError):
        validate_version_payload({"conditions": "not-a-list"})
    with pytest.raises(ValidationError):
        validate_version_payload(["not", "an", "object"])


def test_typed_configs_are_stored():
    db = _make_session()
    rule = _rule(db)
    version = RuleVersioningService(db).create_rule_version(
        rule.id,
        TENANT_A,
        {
            "thresholdConfig": {"windowDays": 7, "baselineType": "average"},
            "lifecycleConfig": {"triggerDays": 30},
            "anomalyConfig": {"zScoreThreshold": 2.5},
            "conditions": [
                {
                    "fieldPath": "sessions",
                    "operator": "gt",
                    "comparisonValue": 100,
                    "scope": "aggregated",
                    "windowConfig": {"durationSeconds": 3600, "aggregation": "SUM"},
                }
            ],
        },
    )
    assert version.threshold_config == {"window_days": 7, "baseline_type": "average"}
    assert version.lifecycle_config == {"inactivity_field": "lastActivityAt", "trigger_days": 30}
    assert version.anomaly_config == {"z_score_threshold": 2.5}
    condition = RuleVersioningService(db).list_rule_conditions(version.id, TENANT_A)[0]
    assert condition.window_config["aggregation"] == "sum"
    assert condition.window_config["duration_seconds"] == 3600


def test_publish_sets_default_and_keeps_older_published():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)

    v1 = service.create_rule_version(rule.id, TENANT_A, {"conditions": [SESSIONS_LT_50]})
    service.publish_rule_version(v1.id, TENANT_A)
    db.refresh(rule)
    assert rule.default_version_id == v1.id

    v2 = service.create_rule_version(rule.id, TENANT_A, {"conditions": [SESSIONS_LT_50]})
    published = service.publish_rule_version(v2.id, TENANT_A)
    db.refresh(rule)
    db.refresh(v1)

    assert published.status == "published"
    assert published.published_at is not None
    assert rule.default_version_id == v2.id
    assert v1.status == "published"
    published_audits = (
        db.query(RuleAudit)
        .filter(RuleAudit.rule_id == rule.id, RuleAudit.change_type == "published")
        .order_by(RuleAudit.id.asc())
        .all()
    )
    assert len(published_audits) == 2
    assert published_audits[1].rule_version_id == v2.id
    assert published_audits[1].previous_state["default_version_id"] == v1.id
    assert published_audits[1].new_state["default_version_id"] == v2.id
    assert published_audits[1].new_state["version"]["status"] == "published"


def test_publish_authorization_and_missing_version():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)
    version = service.create_rule_version(rule.id, TENANT_A, {})

    with pytest.raises(AccessDenied):
        service.publish_rule_version(version.id, TENANT_B)
    with pytest.raises(NotFound):
        service.publish_rule_version("missing", TENANT_B)
    db.refresh(version)
    assert version.status == "draft"


def test_listing_reverifies_tenant_through_owning_rule():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)
    version = service.create_rule_version(rule.id, TENANT_A, {"conditions": [SESSIONS_LT_50]})

    with pytest.raises(AccessDenied):
        service.list_rule_conditions(version.id, TENANT_B)
    with pytest.raises(AccessDenied):
        service.list_rule_actions(version.id, TENANT_B)
    with pytest.raises(AccessDenied):
        service.list_rule_audits(rule.id, TENANT_B)
    with pytest.raises(NotFound):
        service.list_rule_conditions("missing", TENANT_A)
    with pytest.raises(AccessDenied):
        service.create_rule_version(rule.id, TENANT_B, {})


def test_list_evaluations_most_recent_first_with_limit():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)
    for i in range(5):
        db.add(
            RuleEvaluation(
                rule_id=rule.id,
                rule_version_id="v",
                signal_id=f"sig-{i}",
                agency_id="A",
                matched=bool(i % 2),
                status="completed",
            )
        )
        db.commit()

    rows = service.list_rule_evaluations(rule.id, TENANT_A, "3")
    assert [r.signal_id for r in rows] == ["sig-4", "sig-3", "sig-2"]
    assert len(service.list_rule_evaluations(rule.id, TENANT_A, "garbage")) == 5
    assert len(service.list_rule_evaluations(rule.id, TENANT_A)) == 5


def test_version_conflict_after_exhausting_retries(monkeypatch):
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)
    service.create_rule_version(rule.id, TENANT_A, {})
    monkeypatch.setattr(settings, "version_allocation_retries", 2)
    # Always propose a number that is already taken.
    monkeypatch.setattr(service.store, "max_version", lambda _rule_id: 0)

    with pytest.raises(VersionConflict):
        service.create_rule_version(rule.id, TENANT_A, {})
    assert db.query(RuleVersion).count() == 1


def test_matches_patterns_are_checked_at_creation():
    db = _make_session()
    rule = _rule(db)
    service = RuleVersioningService(db)

    with pytest.raises(ValidationError) as excinfo:
        service.create_rule_version(
            rule.id,
            TENANT_A,
            {
                "conditions": [
                    {"fieldPath": "email", "operator": "matches", "comparisonValue": r"^[^@]+@example\.com$"},
                    {"fieldPath": "email", "operator": "matches", "comparisonValue": r"(a+)+$"},
                    {"fieldPath": "email", "operator": "matches", "comparisonValue": "[unclosed"},
                    {"fieldPath": "email", "operator": "matches"},
                ]
            },
        )
    assert sorted(e["index"] for e in excinfo.value.errors) == [1, 2, 3]
    assert db.query(RuleVersion).count() == 0
