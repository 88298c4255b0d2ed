"""create automation workflow, run and delivery tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "automation_workflow",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("pipeline_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("trigger_filter", sa.JSON(), nullable=False),
        sa.Column("graph_data", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["pipeline_id"], ["crm_pipeline.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_workflow_match",
        "automation_workflow",
        ["organization_id", "pipeline_id", "trigger_type", "is_active"],
        unique=False,
    )

    op.create_table(
        "automation_step",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("workflow_version", sa.Integer(), nullable=False),
        sa.Column("step_key", sa.String(length=128), nullable=True),
        sa.Column("step_type", sa.String(length=32), nullable=False),
        sa.Column("config", sa.JSON(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("next_step_id", sa.Uuid(), nullable=True),
        sa.Column("true_step_id", sa.Uuid(), nullable=True),
        sa.Column("false_step_id", sa.Uuid(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["automation_workflow.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workflow_id",
            "workflow_version",
            "position",
            name="uq_automation_step_workflow_version_position",
        ),
    )
    op.create_index(
        "ix_automation_step_workflow_version",
        "automation_step",
        ["workflow_id", "workflow_version"],
        unique=False,
    )

    op.create_table(
        "automation_run",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workflow_id", sa.Uuid(), nullable=False),
        sa.Column("workflow_version", sa.Integer(), nullable=False),
        sa.Column("contact_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("source_event_id", sa.String(length=128), nullable=False),
        sa.Column("triggering_event", sa.JSON(), nullable=False),
        sa.Column("trigger_depth", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("current_step_id", sa.Uuid(), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["workflow_id"], ["automation_workflow.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workflow_id",
            "contact_id",
            "source_event_id",
            name="uq_automation_run_workflow_contact_event",
        ),
    )
    op.create_index(
        "ix_automation_run_workflow_created",
        "automation_run",
        ["workflow_id", "created_at"],
        unique=False,
    )
    op.create_index("ix_automation_run_status", "automation_run", ["status"], unique=False)
    op.create_index("ix_automation_run_contact", "automation_run", ["contact_id", "status"], unique=False)

    op.create_table(
        "automation_step_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("run_id", sa.Uuid(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("step_id", sa.Uuid(), nullable=False),
        sa.Column("step_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["run_id"], ["automation_run.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("run_id", "sequence", name="uq_automation_step_log_run_sequence"),
    )
    op.create_index(
        "ix_automation_step_log_run_step",
        "automation_step_log",
        ["run_id", "step_id"],
        unique=False,
    )
    op.create_index(
        "ix_automation_step_log_waiting",
        "automation_step_log",
        ["status", "resume_at"],
        unique=False,
    )

    op.create_table(
        "automation_webhook_endpoint",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("method", sa.String(length=8), nullable=False, server_default="POST"),
        sa.Column("headers", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_webhook_endpoint_organization",
        "automation_webhook_endpoint",
        ["organization_id"],
        unique=False,
    )

    op.create_table(
        "automation_email_template",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("subject", sa.Text(), nullable=False),
        sa.Column("body_html", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_automation_email_template_organization",
        "automation_email_template",
        ["organization_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_automation_email_template_organization", table_name="automation_email_template")
    op.drop_table("automation_email_template")
    op.drop_index("ix_automation_webhook_endpoint_organization", table_name="automation_webhook_endpoint")
    op.drop_table("automation_webhook_endpoint")
    op.drop_index("ix_automation_step_log_waiting", table_name="automation_step_log")
    op.drop_index("ix_automation_step_log_run_step", table_name="automation_step_log")
    op.drop_table("automation_step_log")
    op.drop_index("ix_automation_run_contact", table_name="automation_run")
    op.drop_index("ix_automation_run_status", table_name="automation_run")
    op.drop_index("ix_automation_run_workflow_created", table_name="automation_run")
    op.drop_table("automation_run")
    op.drop_index("ix_automation_step_workflow_version", table_name="automation_step")
    op.drop_table("automation_step")
    op.drop_index("ix_automation_workflow_match", table_name="automation_workflow")
    op.drop_table("automation_workflow")
