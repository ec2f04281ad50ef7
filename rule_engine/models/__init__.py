"""
SQLAlchemy model base class for the rule engine.

This package defines ORM models for rules, their versions, conditions and
actions, the audit and evaluation logs, and the signal history read by the
lookback scopes. All models inherit from the declarative `Base` defined
here.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import JSON
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB


@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return compiler.process(JSON(), **kw)


from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy ORM models."""

    pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


from .rule import Rule  # noqa: E402,F401
from .rule_version import RuleVersion  # noqa: E402,F401
from .rule_condition import RuleCondition  # noqa: E402,F401
from .rule_action import RuleAction  # noqa: E402,F401
from .rule_audit import RuleAudit  # noqa: E402,F401
from .rule_evaluation import RuleEvaluation  # noqa: E402,F401
from .signal import Signal  # noqa: E402,F401

__all__ = [
    "Base",
    "utcnow",

    # Definitions
    "Rule",
    "RuleVersion",
    "RuleCondition",
    "RuleAction",

    # Append-only logs
    "RuleAudit",
    "RuleEvaluation",

    # External input
    "Signal",
]
