"""
API endpoints for rules, rule versions and their logs.
"""

from __future__ import annotations

from typing import Any, List, Optional

from fastapi import APIRouter, Body, Depends, Query, Response
from sqlalchemy.orm import Session

from ...core.auth import CallerContext, get_current_user
from ...core.db import get_db
from ...core.errors import AccessDenied
from ...schemas.audit import RuleAuditOut, RuleEvaluationOut
from ...schemas.rule import RuleOut
from ...schemas.rule_version import RuleActionOut, RuleConditionOut, RuleVersionDetailOut, RuleVersionOut
from ...services.rule_definitions import RuleDefinitionService
from ...services.rule_versioning import RuleVersioningService


router = APIRouter(prefix="/api/v1", tags=["rules"])


def _target_agency(user: CallerContext, agency_id: Optional[str]) -> Optional[str]:
    """Superadmins may act on behalf of any agency via `agency_id`."""
    agency_id = (agency_id or "").strip() or None
    if agency_id is None:
        return user.agency_id
    if not user.is_super_admin and agency_id != user.agency_id:
        raise AccessDenied()
    return agency_id


@router.get("/rules", response_model=List[RuleOut])
def list_rules(
    agency_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> List[RuleOut]:
    rules = RuleDefinitionService(db).list_rules(_target_agency(user, agency_id))
    return [RuleOut.model_validate(r) for r in rules]


@router.post("/rules", response_model=RuleOut, status_code=201)
def create_rule(
    payload: Any = Body(...),
    agency_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> RuleOut:
    rule = RuleDefinitionService(db).create_rule(_target_agency(user, agency_id), user.user_id, payload)
    return RuleOut.model_validate(rule)


@router.get("/rules/{rule_id}", response_model=RuleOut)
def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> RuleOut:
    return RuleOut.model_validate(RuleDefinitionService(db).get_rule(rule_id, user))


@router.patch("/rules/{rule_id}", response_model=RuleOut)
def update_rule(
    rule_id: str,
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> RuleOut:
    return RuleOut.model_validate(RuleDefinitionService(db).update_rule(rule_id, user, payload))


@router.delete("/rules/{rule_id}", status_code=204)
def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> Response:
    RuleDefinitionService(db).delete_rule(rule_id, user)
    return Response(status_code=204)


@router.get("/rules/{rule_id}/versions", response_model=List[RuleVersionOut])
def list_rule_versions(
    rule_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> List[RuleVersionOut]:
    versions = RuleVersioningService(db).list_rule_versions(rule_id, user)
    return [RuleVersionOut.model_validate(v) for v in versions]


@router.post("/rules/{rule_id}/versions", response_model=RuleVersionDetailOut, status_code=201)
def create_rule_version(
    rule_id: str,
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> RuleVersionDetailOut:
    service = RuleVersioningService(db)
    version = service.create_rule_version(rule_id, user, payload)
    out = RuleVersionDetailOut.model_validate(version)
    out.conditions = [RuleConditionOut.model_validate(c) for c in service.store.list_conditions(version.id)]
    out.actions = [RuleActionOut.model_validate(a) for a in service.store.list_actions(version.id)]
    return out


@router.post("/rule-versions/{version_id}/publish", response_model=RuleVersionOut)
def publish_rule_version(
    version_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> RuleVersionOut:
    return RuleVersionOut.model_validate(RuleVersioningService(db).publish_rule_version(version_id, user))


@router.get("/rule-versions/{version_id}/conditions", response_model=List[RuleConditionOut])
def list_rule_conditions(
    version_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> List[RuleConditionOut]:
    rows = RuleVersioningService(db).list_rule_conditions(version_id, user)
    return [RuleConditionOut.model_validate(r) for r in rows]


@router.get("/rule-versions/{version_id}/actions", response_model=List[RuleActionOut])
def list_rule_actions(
    version_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> List[RuleActionOut]:
    rows = RuleVersioningService(db).list_rule_actions(version_id, user)
    return [RuleActionOut.model_validate(r) for r in rows]


@router.get("/rules/{rule_id}/audits", response_model=List[RuleAuditOut])
def list_rule_audits(
    rule_id: str,
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> List[RuleAuditOut]:
    rows = RuleVersioningService(db).list_rule_audits(rule_id, user)
    return [RuleAuditOut.model_validate(r) for r in rows]


@router.get("/rules/{rule_id}/evaluations", response_model=List[RuleEvaluationOut])
def list_rule_evaluations(
    rule_id: str,
    limit: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> List[RuleEvaluationOut]:
    rows = RuleVersioningService(db).list_rule_evaluations(rule_id, user, limit)
    return [RuleEvaluationOut.model_validate(r) for r in rows]
