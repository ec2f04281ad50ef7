"""
Signal ingestion.

Stores an incoming signal (so later lookbacks can see it) and runs the
evaluation engine over the tenant's live rules. Re-delivering a signal with
the same id reuses the stored row; the engine's idempotence then returns the
existing evaluations without dispatching actions again.
"""

from __future__ import annotations

import logging
import uuid
from datetime import timezone
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.auth import CallerContext
from ..core.errors import AccessDenied, AgencyRequired
from ..models import utcnow
from ..models.rule_evaluation import RuleEvaluation
from ..models.signal import Signal
from ..schemas.signal import SignalIn
from .action_dispatch import ActionDispatchRegistry
from .evaluation_engine import EvaluationEngine
from .rule_definitions import can_access, validate_payload


logger = logging.getLogger("signal_ingest")


def store_signal(db: Session, data: SignalIn, agency_id: str) -> Signal:
    signal_id = data.id or uuid.uuid4().hex
    existing = db.get(Signal, signal_id)
    if existing is not None:
        if existing.agency_id != agency_id:
            raise AccessDenied()
        return existing
    occurred_at = data.occurred_at or utcnow()
    if occurred_at.tzinfo is None:
        occurred_at = occurred_at.replace(tzinfo=timezone.utc)
    signal = Signal(
        id=signal_id,
        agency_id=agency_id,
        source=data.source,
        type=data.type,
        payload=dict(data.payload),
        client_id=data.client_id,
        urgency=data.urgency,
        occurred_at=occurred_at.astimezone(timezone.utc),
    )
    db.add(signal)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same id
        db.rollback()
        existing = db.get(Signal, signal_id)
        if existing is None:
            raise
        if existing.agency_id != agency_id:
            raise AccessDenied()
        return existing
    db.refresh(signal)
    logger.info("Signal stored id=%s agency=%s type=%s", signal.id, agency_id, signal.type)
    return signal


def ingest_signal(
    db: Session,
    payload: Any,
    caller: CallerContext,
    *,
    registry: Optional[ActionDispatchRegistry] = None,
) -> tuple[Signal, list[RuleEvaluation]]:
    data: SignalIn = validate_payload(SignalIn, payload, item="signal")
    agency_id = data.agency_id or caller.agency_id
    if not agency_id:
        raise AgencyRequired()
    if not can_access(caller, agency_id):
        raise AccessDenied()
    signal = store_signal(db, data, agency_id)
    evaluations = EvaluationEngine(db, registry=registry).evaluate_signal(signal, context=data.context)
    return signal, evaluations
