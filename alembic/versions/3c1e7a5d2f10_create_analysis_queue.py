"""create_analysis_queue

Revision ID: 3c1e7a5d2f10
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "3c1e7a5d2f10"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUM_ANALYSIS_TYPE = postgresql.ENUM(
	"daily",
	"weekly",
	"monthly",
	name="analysis_type",
	create_type=False,
)

ENUM_JOB_STATUS = postgresql.ENUM(
	"pending",
	"processing",
	"completed",
	"failed",
	name="analysis_job_status",
	create_type=False,
)


def upgrade() -> None:
	op.execute('CREATE EXTENSION IF NOT EXISTS "uuid-ossp"')
	ENUM_ANALYSIS_TYPE.create(op.get_bind(), checkfirst=True)
	ENUM_JOB_STATUS.create(op.get_bind(), checkfirst=True)

	op.create_table(
		"analysis_queue",
		sa.Column(
			"id",
			postgresql.UUID(as_uuid=True),
			server_default=sa.text("uuid_generate_v4()"),
			nullable=False,
		),
		sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
		sa.Column("analysis_type", ENUM_ANALYSIS_TYPE, nullable=False),
		sa.Column("target_date", sa.Date(), nullable=False),
		sa.Column("week_start", sa.Date(), nullable=True),
		sa.Column("month_start", sa.Date(), nullable=True),
		sa.Column("entry_id", postgresql.UUID(as_uuid=True), nullable=True),
		sa.Column("status", ENUM_JOB_STATUS, nullable=False, server_default=sa.text("'pending'")),
		sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
		sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
		sa.Column("next_retry_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
		sa.Column("error_message", sa.Text(), nullable=True),
		sa.Column("skipped", sa.Boolean(), nullable=False, server_default=sa.text("false")),
		sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
		sa.Column(
			"created_at",
			sa.DateTime(timezone=True),
			server_default=sa.text("now()"),
			nullable=False,
		),
		sa.Column(
			"updated_at",
			sa.DateTime(timezone=True),
			server_default=sa.text("now()"),
			nullable=False,
		),
		sa.PrimaryKeyConstraint("id"),
	)
	op.create_index("ix_analysis_queue_user_id", "analysis_queue", ["user_id"])
	op.create_index("ix_analysis_queue_status_next_retry", "analysis_queue", ["status", "next_retry_at"])
	op.create_index(
		"uq_analysis_queue_active_period",
		"analysis_queue",
		["user_id", "analysis_type", "target_date"],
		unique=True,
		postgresql_where=sa.text("status IN ('pending', 'processing')"),
	)

	op.create_table(
		"ai_errors_log",
		sa.Column(
			"id",
			postgresql.UUID(as_uuid=True),
			server_default=sa.text("uuid_generate_v4()"),
			nullable=False,
		),
		sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=True),
		sa.Column("entry_id", postgresql.UUID(as_uuid=True), nullable=True),
		sa.Column("job_id", postgresql.UUID(as_uuid=True), nullable=True),
		sa.Column("analysis_type", sa.String(length=16), nullable=False),
		sa.Column("error_code", sa.String(length=64), nullable=False),
		sa.Column("error_message", sa.Text(), nullable=False),
		sa.Column("error_type", sa.String(length=32), nullable=False),
		sa.Column("error_severity", sa.String(length=8), nullable=False),
		sa.Column("failed_at_step", sa.String(length=32), nullable=False),
		sa.Column("retry_attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
		sa.Column("handler_name", sa.String(length=64), nullable=False),
		sa.Column("environment", sa.String(length=32), nullable=False),
		sa.Column("error_details", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
		sa.Column(
			"created_at",
			sa.DateTime(timezone=True),
			server_default=sa.text("now()"),
			nullable=False,
		),
		sa.PrimaryKeyConstraint("id"),
	)
	op.create_index("ix_ai_errors_log_user_id", "ai_errors_log", ["user_id"])


def downgrade() -> None:
	op.drop_index("ix_ai_errors_log_user_id", table_name="ai_errors_log")
	op.drop_table("ai_errors_log")
	op.drop_index("uq_analysis_queue_active_period", table_name="analysis_queue")
	op.drop_index("ix_analysis_queue_status_next_retry", table_name="analysis_queue")
	op.drop_index("ix_analysis_queue_user_id", table_name="analysis_queue")
	op.drop_table("analysis_queue")
	ENUM_JOB_STATUS.drop(op.get_bind(), checkfirst=True)
	ENUM_ANALYSIS_TYPE.drop(op.get_bind(), checkfirst=True)
