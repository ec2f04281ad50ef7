"""
Evaluation predicates attached to a rule version.
"""

from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from . import Base


class RuleCondition(Base):
    __tablename__ = "rule_conditions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    rule_version_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("rule_versions.id", ondelete="CASCADE"), index=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    field_path: Mapped[str] = mapped_column(String(256), nullable=False)  # dot notation, e.g. "metrics.sessions"
    operator: Mapped[str] = mapped_column(String(32), nullable=False)
    comparison_value: Mapped[Any] = mapped_column(JSONB, nullable=True)
    window_config: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    scope: Mapped[str] = mapped_column(String(16), default="signal")  # signal | context | history | aggregated

    __table_args__ = (
        UniqueConstraint("rule_version_id", "order", name="uq_rule_conditions_version_order"),
    )
