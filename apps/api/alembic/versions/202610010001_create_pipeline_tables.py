"""create pipeline tables

Revision ID: 202610010001
Revises:
Create Date: 2026-10-01 00:01:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610010001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "pipeline_project",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="qualifie"),
        sa.Column("last_known_status", sa.String(length=32), nullable=True),
        sa.Column("assigned_user_id", sa.String(length=128), nullable=True),
        sa.Column("owner_user_id", sa.String(length=128), nullable=True),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_project_status", "pipeline_project", ["status"], unique=False)
    op.create_index("ix_pipeline_project_assigned_user_id", "pipeline_project", ["assigned_user_id"], unique=False)

    op.create_table(
        "pipeline_quote",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("reference", sa.Text(), nullable=True),
        sa.Column("amount", sa.Numeric(precision=18, scale=2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="en_attente"),
        sa.Column("invoice_settled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.ForeignKeyConstraint(["project_id"], ["pipeline_project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_pipeline_quote_project_id", "pipeline_quote", ["project_id"], unique=False)

    op.create_table(
        "pipeline_stage_interval",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("stage_name", sa.String(length=32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("changed_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["pipeline_project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_stage_interval_project_open",
        "pipeline_stage_interval",
        ["project_id", "ended_at"],
        unique=False,
    )
    op.create_index(
        "ix_pipeline_stage_interval_project_stage",
        "pipeline_stage_interval",
        ["project_id", "stage_name"],
        unique=False,
    )

    op.create_table(
        "pipeline_history",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("entry_type", sa.String(length=32), nullable=False, server_default="statut"),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("actor_user_id", sa.String(length=128), nullable=False),
        sa.Column("previous_status", sa.String(length=32), nullable=True),
        sa.Column("new_status", sa.String(length=32), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_pipeline_history_project_occurred",
        "pipeline_history",
        ["project_id", "occurred_at"],
        unique=False,
    )

    op.create_table(
        "pipeline_notification",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("recipient_user_id", sa.String(length=128), nullable=False),
        sa.Column("notification_type", sa.String(length=64), nullable=False),
        sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("linked_type", sa.String(length=32), nullable=False, server_default="project"),
        sa.Column("linked_id", sa.Uuid(), nullable=False),
        sa.Column("status_value", sa.String(length=32), nullable=False),
        sa.Column("transition_id", sa.Uuid(), nullable=False),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("delivery_status", sa.String(length=16), nullable=False, server_default="Queued"),
        sa.Column("delivery_error", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "recipient_user_id",
            "linked_id",
            "status_value",
            name="uq_pipeline_notification_recipient_project_status",
        ),
    )
    op.create_index(
        "ix_pipeline_notification_recipient_read_created",
        "pipeline_notification",
        ["recipient_user_id", "read_at", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_pipeline_notification_recipient_read_created", table_name="pipeline_notification")
    op.drop_table("pipeline_notification")
    op.drop_index("ix_pipeline_history_project_occurred", table_name="pipeline_history")
    op.drop_table("pipeline_history")
    op.drop_index("ix_pipeline_stage_interval_project_stage", table_name="pipeline_stage_interval")
    op.drop_index("ix_pipeline_stage_interval_project_open", table_name="pipeline_stage_interval")
    op.drop_table("pipeline_stage_interval")
    op.drop_index("ix_pipeline_quote_project_id", table_name="pipeline_quote")
    op.drop_table("pipeline_quote")
    op.drop_index("ix_pipeline_project_assigned_user_id", table_name="pipeline_project")
    op.drop_index("ix_pipeline_project_status", table_name="pipeline_project")
    op.drop_table("pipeline_project")
