"""
Per-signal evaluation log.

One row per (rule, version, signal). The row is inserted as a claim before
any action runs and finalized once with the action outcomes.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow

EVALUATION_STATUS_PENDING = "pending"
EVALUATION_STATUS_COMPLETED = "completed"
# Returned for rules without a live version; never persisted
EVALUATION_STATUS_NO_VERSION = "no_published_version"


class RuleEvaluation(Base):
    __tablename__ = "rule_evaluations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    rule_version_id: Mapped[str] = mapped_column(String(36), nullable=False)
    signal_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    agency_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    matched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), default=EVALUATION_STATUS_PENDING)
    condition_results: Mapped[list] = mapped_column(JSON, default=list)
    actions_triggered: Mapped[list] = mapped_column(JSON, default=list)
    evaluation_context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("rule_id", "rule_version_id", "signal_id", name="uq_rule_evaluations_rule_version_signal"),
        Index("ix_rule_evaluations_rule_created", "rule_id", "created_at"),
    )
