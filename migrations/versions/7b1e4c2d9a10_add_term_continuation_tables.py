"""add term continuation, message log and audit tables

Revision ID: 7b1e4c2d9a10
Revises:
Create Date: 2026-02-02 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "7b1e4c2d9a10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "term_continuation_runs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("current_term_id", sa.String(length=36), sa.ForeignKey("terms.id"), nullable=False),
        sa.Column("next_term_id", sa.String(length=36), sa.ForeignKey("terms.id"), nullable=False),
        sa.Column("notice_deadline", sa.Date(), nullable=False),
        sa.Column("assumed_continuing", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reminder_schedule", sa.JSON(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("summary", sa.JSON(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("reminder_rounds", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_reminder_at", sa.DateTime(), nullable=True),
        sa.Column("deadline_passed_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("created_by", sa.String(length=36), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_term_continuation_runs_org_id", "term_continuation_runs", ["org_id"])
    op.create_index(
        "ix_term_continuation_runs_terms",
        "term_continuation_runs",
        ["org_id", "current_term_id", "next_term_id"],
    )

    op.create_table(
        "term_continuation_responses",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("run_id", sa.String(length=36), sa.ForeignKey("term_continuation_runs.id"), nullable=False),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("student_id", sa.String(length=36), sa.ForeignKey("students.id"), nullable=False),
        sa.Column("guardian_id", sa.String(length=36), sa.ForeignKey("guardians.id"), nullable=False),
        sa.Column("lesson_summary", sa.JSON(), nullable=False),
        sa.Column("next_term_fee_minor", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("response", sa.String(length=30), nullable=False, server_default="pending"),
        sa.Column("response_at", sa.DateTime(), nullable=True),
        sa.Column("response_method", sa.String(length=20), nullable=True),
        sa.Column("response_token", sa.String(length=64), nullable=False),
        sa.Column("withdrawal_reason", sa.String(length=100), nullable=True),
        sa.Column("withdrawal_notes", sa.Text(), nullable=True),
        sa.Column("initial_sent_at", sa.DateTime(), nullable=True),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reminder_1_sent_at", sa.DateTime(), nullable=True),
        sa.Column("reminder_2_sent_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("run_id", "student_id", "guardian_id", name="uq_continuation_run_student_guardian"),
    )
    op.create_index(
        "ix_term_continuation_responses_response_token",
        "term_continuation_responses",
        ["response_token"],
        unique=True,
    )
    for col in ("run_id", "org_id", "student_id", "guardian_id", "response"):
        op.create_index(f"ix_term_continuation_responses_{col}", "term_continuation_responses", [col])

    op.create_table(
        "message_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), sa.ForeignKey("organisations.id"), nullable=False),
        sa.Column("channel", sa.String(length=20), nullable=False, server_default="email"),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("sender_user_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("recipient_name", sa.String(length=200), nullable=True),
        sa.Column("recipient_type", sa.String(length=20), nullable=True),
        sa.Column("recipient_id", sa.String(length=36), nullable=True),
        sa.Column("related_id", sa.String(length=36), nullable=True),
        sa.Column("message_type", sa.String(length=40), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
    )
    for col in ("org_id", "recipient_id", "related_id"):
        op.create_index(f"ix_message_log_{col}", "message_log", [col])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("org_id", sa.String(length=36), nullable=True),
        sa.Column("actor_user_id", sa.String(length=36), nullable=True),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=100), nullable=True),
        sa.Column("entity_id", sa.String(length=36), nullable=True),
        sa.Column("before", sa.JSON(), nullable=True),
        sa.Column("after", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_audit_logs_org_id", "audit_logs", ["org_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade():
    op.drop_table("audit_logs")
    op.drop_table("message_log")
    op.drop_table("term_continuation_responses")
    op.drop_table("term_continuation_runs")
