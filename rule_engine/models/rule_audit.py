"""
Audit log for rule and rule version changes.

Rows are written once and never updated. `rule_id` carries no foreign key
so the trail outlives the rule it describes.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, JSON, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from . import Base, utcnow


class RuleAudit(Base):
    __tablename__ = "rule_audits"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    rule_version_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    change_type: Mapped[str] = mapped_column(String(16), nullable=False)  # created | updated | deleted | published
    change_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    previous_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    new_state: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
