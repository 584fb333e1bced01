"""Execution trace tables: flow_executions, step_executions, external_api_calls.

Revision ID: 001_execution_traces
Revises:
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID, JSON

# revision identifiers, used by Alembic.
revision: str = "001_execution_traces"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ERROR_CATEGORY_CHECK = (
    "error_category IS NULL OR error_category IN "
    "('api_error', 'validation_error', 'timeout', 'unknown')"
)


def upgrade() -> None:
    # gen_random_uuid() is built in from PostgreSQL 13; pgcrypto covers older servers
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto")

    op.create_table(
        "flow_executions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("trace_id", sa.String(64), nullable=False, unique=True),
        sa.Column("flow_name", sa.String(100), nullable=False),
        sa.Column("flow_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'running'")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(30), nullable=True),
        sa.Column("input_summary", JSON(), nullable=True),
        sa.CheckConstraint(
            "status IN ('running', 'success', 'failed')", name="ck_flow_executions_status"
        ),
        sa.CheckConstraint(_ERROR_CATEGORY_CHECK, name="ck_flow_executions_error_category"),
    )
    op.create_index("ix_flow_executions_status_started_at", "flow_executions", ["status", "started_at"])
    op.create_index("ix_flow_executions_flow_name", "flow_executions", ["flow_name"])

    op.create_table(
        "step_executions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("trace_id", sa.String(64), nullable=False),
        sa.Column(
            "execution_id",
            UUID(as_uuid=True),
            sa.ForeignKey("flow_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("step_name", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'started'")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_category", sa.String(30), nullable=True),
        sa.Column("skip_reason", sa.String(100), nullable=True),
        sa.Column("metadata", JSON(), nullable=True),
        sa.CheckConstraint(
            "status IN ('started', 'success', 'failed', 'skipped')", name="ck_step_executions_status"
        ),
        sa.CheckConstraint(_ERROR_CATEGORY_CHECK, name="ck_step_executions_error_category"),
    )
    op.create_index("ix_step_executions_trace_id", "step_executions", ["trace_id"])

    op.create_table(
        "external_api_calls",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("trace_id", sa.String(64), nullable=False),
        sa.Column(
            "execution_id",
            UUID(as_uuid=True),
            sa.ForeignKey("flow_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "step_execution_id",
            UUID(as_uuid=True),
            sa.ForeignKey("step_executions.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("service", sa.String(50), nullable=False),
        sa.Column("operation", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("http_status", sa.Integer(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("called_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('success', 'failed', 'timeout')", name="ck_external_api_calls_status"
        ),
    )
    op.create_index("ix_external_api_calls_trace_id", "external_api_calls", ["trace_id"])
    op.create_index(
        "ix_external_api_calls_service_called_at", "external_api_calls", ["service", "called_at"]
    )


def downgrade() -> None:
    op.drop_table("external_api_calls")
    op.drop_table("step_executions")
    op.drop_table("flow_executions")
