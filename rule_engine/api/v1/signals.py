"""
Signal ingestion endpoint.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session

from ...core.auth import CallerContext, get_current_user
from ...core.db import get_db
from ...schemas.audit import RuleEvaluationOut
from ...schemas.signal import SignalEvaluationOut
from ...services.signal_ingest import ingest_signal


router = APIRouter(prefix="/api/v1/signals", tags=["signals"])


@router.post("", response_model=SignalEvaluationOut)
def post_signal(
    payload: Any = Body(...),
    db: Session = Depends(get_db),
    user: CallerContext = Depends(get_current_user),
) -> SignalEvaluationOut:
    signal, evaluations = ingest_signal(db, payload, user)
    return SignalEvaluationOut(
        signal_id=signal.id,
        evaluations=[RuleEvaluationOut.model_validate(e) for e in evaluations],
        matched_rule_ids=[e.rule_id for e in evaluations if e.matched],
    )
