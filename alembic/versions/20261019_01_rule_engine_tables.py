"""create rule engine tables

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_01"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=32), nullable=True),
        sa.Column("signal_types", sa.JSON(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=True, server_default=sa.text("true")),
        sa.Column("default_version_id", sa.String(length=36), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_rules_agency_id", "rules", ["agency_id"])
    op.create_index("ix_rules_category", "rules", ["category"])
    op.create_index("ix_rules_enabled", "rules", ["enabled"])

    op.create_table(
        "rule_versions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("rule_id", sa.String(length=36), sa.ForeignKey("rules.id", ondelete="CASCADE"), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=True),
        sa.Column("condition_logic", sa.String(length=8), nullable=True),
        sa.Column("threshold_config", _jsonb(), nullable=True),
        sa.Column("lifecycle_config", _jsonb(), nullable=True),
        sa.Column("anomaly_config", _jsonb(), nullable=True),
        sa.Column("created_by", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("rule_id", "version", name="uq_rule_versions_rule_version"),
    )
    op.create_index("ix_rule_versions_rule_id", "rule_versions", ["rule_id"])
    op.create_index("ix_rule_versions_status", "rule_versions", ["status"])

    op.create_table(
        "rule_conditions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "rule_version_id",
            sa.String(length=36),
            sa.ForeignKey("rule_versions.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("field_path", sa.String(length=256), nullable=False),
        sa.Column("operator", sa.String(length=32), nullable=False),
        sa.Column("comparison_value", _jsonb(), nullable=True),
        sa.Column("window_config", _jsonb(), nullable=True),
        sa.Column("scope", sa.String(length=16), nullable=True),
        sa.UniqueConstraint("rule_version_id", "order", name="uq_rule_conditions_version_order"),
    )
    op.create_index("ix_rule_conditions_rule_version_id", "rule_conditions", ["rule_version_id"])

    op.create_table(
        "rule_actions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "rule_version_id",
            sa.String(length=36),
            sa.ForeignKey("rule_versions.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column("order", sa.Integer(), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("action_config", _jsonb(), nullable=True),
        sa.UniqueConstraint("rule_version_id", "order", name="uq_rule_actions_version_order"),
    )
    op.create_index("ix_rule_actions_rule_version_id", "rule_actions", ["rule_version_id"])

    op.create_table(
        "rule_audits",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(length=36), nullable=False),
        sa.Column("rule_version_id", sa.String(length=36), nullable=True),
        sa.Column("actor_id", sa.String(length=64), nullable=True),
        sa.Column("change_type", sa.String(length=16), nullable=False),
        sa.Column("change_summary", sa.Text(), nullable=True),
        sa.Column("previous_state", sa.JSON(), nullable=True),
        sa.Column("new_state", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_rule_audits_rule_id", "rule_audits", ["rule_id"])
    op.create_index("ix_rule_audits_actor_id", "rule_audits", ["actor_id"])
    op.create_index("ix_rule_audits_created_at", "rule_audits", ["created_at"])

    op.create_table(
        "rule_evaluations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(length=36), nullable=False),
        sa.Column("rule_version_id", sa.String(length=36), nullable=False),
        sa.Column("signal_id", sa.String(length=64), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("matched", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("status", sa.String(length=16), nullable=True),
        sa.Column("condition_results", sa.JSON(), nullable=True),
        sa.Column("actions_triggered", sa.JSON(), nullable=True),
        sa.Column("evaluation_context", sa.JSON(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "rule_id", "rule_version_id", "signal_id", name="uq_rule_evaluations_rule_version_signal"
        ),
    )
    op.create_index("ix_rule_evaluations_rule_id", "rule_evaluations", ["rule_id"])
    op.create_index("ix_rule_evaluations_signal_id", "rule_evaluations", ["signal_id"])
    op.create_index("ix_rule_evaluations_agency_id", "rule_evaluations", ["agency_id"])
    op.create_index("ix_rule_evaluations_rule_created", "rule_evaluations", ["rule_id", "created_at"])

    op.create_table(
        "signals",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("source", sa.String(length=32), nullable=True),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("client_id", sa.String(length=64), nullable=True),
        sa.Column("urgency", sa.String(length=16), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_signals_agency_id", "signals", ["agency_id"])
    op.create_index("ix_signals_type", "signals", ["type"])
    op.create_index("ix_signals_agency_type_occurred", "signals", ["agency_id", "type", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_signals_agency_type_occurred", table_name="signals")
    op.drop_index("ix_signals_type", table_name="signals")
    op.drop_index("ix_signals_agency_id", table_name="signals")
    op.drop_table("signals")
    op.drop_index("ix_rule_evaluations_rule_created", table_name="rule_evaluations")
    op.drop_index("ix_rule_evaluations_agency_id", table_name="rule_evaluations")
    op.drop_index("ix_rule_evaluations_signal_id", table_name="rule_evaluations")
    op.drop_index("ix_rule_evaluations_rule_id", table_name="rule_evaluations")
    op.drop_table("rule_evaluations")
    op.drop_index("ix_rule_audits_created_at", table_name="rule_audits")
    op.drop_index("ix_rule_audits_actor_id", table_name="rule_audits")
    op.drop_index("ix_rule_audits_rule_id", table_name="rule_audits")
    op.drop_table("rule_audits")
    op.drop_index("ix_rule_actions_rule_version_id", table_name="rule_actions")
    op.drop_table("rule_actions")
    op.drop_index("ix_rule_conditions_rule_version_id", table_name="rule_conditions")
    op.drop_table("rule_conditions")
    op.drop_index("ix_rule_versions_status", table_name="rule_versions")
    op.drop_index("ix_rule_versions_rule_id", table_name="rule_versions")
    op.drop_table("rule_versions")
    op.drop_index("ix_rules_enabled", table_name="rules")
    op.drop_index("ix_rules_category", table_name="rules")
    op.drop_index("ix_rules_agency_id", table_name="rules")
    op.drop_table("rules")
