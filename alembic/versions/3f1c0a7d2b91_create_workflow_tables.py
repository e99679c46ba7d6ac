"""create workflow tables

Revision ID: 3f1c0a7d2b91
Revises:
Create Date: 2026-10-02 09:14:52.331870

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '3f1c0a7d2b91'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "workflow_templates",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("creator_id", sa.String(), nullable=False),
        sa.Column("department_id", sa.String(), nullable=True),
        sa.Column("category", sa.String(), server_default="custom", nullable=False),
        sa.Column("priority", sa.String(), server_default="medium", nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("version", sa.Integer(), server_default=sa.text("1"), nullable=False),
        sa.Column("previous_version_id", sa.String(), nullable=True),
        sa.Column("steps", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
    )
    op.create_index(op.f("ix_workflow_templates_department_id"), "workflow_templates", ["department_id"], unique=False)
    op.create_index(op.f("ix_workflow_templates_category"), "workflow_templates", ["category"], unique=False)
    op.create_index("ix_workflow_templates_active_category", "workflow_templates", ["is_active", "category"], unique=False)

    op.create_table(
        "workflow_instances",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column(
            "template_id",
            sa.String(),
            sa.ForeignKey("workflow_templates.id", name="fk_workflow_instances_template_id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("initiator_id", sa.String(), nullable=False),
        sa.Column("department_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(), server_default="draft", nullable=False),
        sa.Column("priority", sa.String(), server_default="medium", nullable=False),
        sa.Column("current_step", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("related_entity_type", sa.String(), server_default="none", nullable=False),
        sa.Column("related_entity_id", sa.String(), nullable=True),
        sa.Column("steps_data", sa.JSON(), nullable=False),
        sa.Column("comments", sa.JSON(), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.CheckConstraint(
            "status IN ('draft', 'active', 'paused', 'completed', 'cancelled', 'rejected')",
            name="ck_workflow_instances_status",
        ),
        sa.CheckConstraint("current_step >= 0", name="ck_workflow_instances_current_step_nonnegative"),
    )
    op.create_index(op.f("ix_workflow_instances_template_id"), "workflow_instances", ["template_id"], unique=False)
    op.create_index(op.f("ix_workflow_instances_initiator_id"), "workflow_instances", ["initiator_id"], unique=False)
    op.create_index(op.f("ix_workflow_instances_department_id"), "workflow_instances", ["department_id"], unique=False)
    op.create_index(op.f("ix_workflow_instances_status"), "workflow_instances", ["status"], unique=False)
    op.create_index(
        "ix_workflow_instances_related_entity",
        "workflow_instances",
        ["related_entity_type", "related_entity_id"],
        unique=False,
    )

    op.create_table(
        "workflow_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
        sa.Column(
            "instance_id",
            sa.String(),
            sa.ForeignKey("workflow_instances.id", name="fk_workflow_history_instance_id"),
            nullable=False,
        ),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=True),
        sa.Column("details", sa.Text(), server_default="", nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(op.f("ix_workflow_history_instance_id"), "workflow_history", ["instance_id"], unique=False)

    op.create_table(
        "event_outbox",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column("aggregate_id", sa.String(), nullable=False),
        sa.Column(
            "payload",
            sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql"),
            nullable=False,
        ),
        sa.Column("processed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("available_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.UniqueConstraint("event_type", "idempotency_key", name="uq_event_outbox_idempotency"),
    )
    op.create_index("ix_event_outbox_processed", "event_outbox", ["processed", "available_at"], unique=False)
    op.create_index(op.f("ix_event_outbox_event_type"), "event_outbox", ["event_type"], unique=False)
    op.create_index(op.f("ix_event_outbox_aggregate_id"), "event_outbox", ["aggregate_id"], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f("ix_event_outbox_aggregate_id"), table_name="event_outbox")
    op.drop_index(op.f("ix_event_outbox_event_type"), table_name="event_outbox")
    op.drop_index("ix_event_outbox_processed", table_name="event_outbox")
    op.drop_table("event_outbox")

    op.drop_index(op.f("ix_workflow_history_instance_id"), table_name="workflow_history")
    op.drop_table("workflow_history")

    op.drop_index("ix_workflow_instances_related_entity", table_name="workflow_instances")
    op.drop_index(op.f("ix_workflow_instances_status"), table_name="workflow_instances")
    op.drop_index(op.f("ix_workflow_instances_department_id"), table_name="workflow_instances")
    op.drop_index(op.f("ix_workflow_instances_initiator_id"), table_name="workflow_instances")
    op.drop_index(op.f("ix_workflow_instances_template_id"), table_name="workflow_instances")
    op.drop_table("workflow_instances")

    op.drop_index("ix_workflow_templates_active_category", table_name="workflow_templates")
    op.drop_index(op.f("ix_workflow_templates_category"), table_name="workflow_templates")
    op.drop_index(op.f("ix_workflow_templates_department_id"), table_name="workflow_templates")
    op.drop_table("workflow_templates")
