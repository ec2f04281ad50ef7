"""
Health endpoints for the rule engine.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...core.config import settings
from ...core.db import get_db
from ...services.action_dispatch import action_registry


router = APIRouter(prefix="/api/v1/health", tags=["health"])


@router.get("")
def health(request: Request, db: Session = Depends(get_db)) -> dict:
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as exc:
        database = f"error: {exc.__class__.__name__}"
    consumer = getattr(request.app.state, "mqtt_consumer", None)
    return {
        "status": "ok" if database == "ok" else "degraded",
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "database": database,
        "action_types": action_registry.action_types(),
        "mqtt_consumer": {"enabled": consumer is not None, "connected": bool(consumer and consumer.is_connected())},
    }


@router.get("/mqtt")
def mqtt_health(request: Request) -> dict:
    consumer = getattr(request.app.state, "mqtt_consumer", None)
    return {
        "enabled": consumer is not None,
        "connected": bool(consumer and consumer.is_connected()),
        "host": settings.mqtt_broker_host,
        "port": settings.mqtt_broker_port,
        "topic": settings.mqtt_signal_topic,
    }
