"""production lifecycle tables, audit log and outbox

Revision ID: 0001_production_lifecycle
Revises:
Create Date: 2026-10-19T09:00:00Z
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_production_lifecycle"
down_revision = None
branch_labels = None
depends_on = None


# Enum columns store member names, matching sqlalchemy.Enum(<python enum>)
request_priority = sa.Enum("LOW", "NORMAL", "HIGH", "URGENT", name="requestpriority")
request_status = sa.Enum("RECEIVED", "PLANNED", "IN_PRODUCTION", "COMPLETED", "CANCELLED", name="requeststatus")
batch_status = sa.Enum("PENDING", "SCHEDULED", "IN_PROGRESS", "COMPLETED", "CANCELLED", "ON_HOLD", name="batchstatus")
step_status = sa.Enum(
    "PENDING", "SCHEDULED", "IN_PROGRESS", "COMPLETED", "CANCELLED", "SKIPPED", "FAILED", name="stepstatus"
)
allocation_status = sa.Enum("PENDING", "PARTIAL", "ALLOCATED", "CONSUMED", name="allocationstatus")
check_type = sa.Enum("VISUAL", "DIMENSIONAL", "FUNCTIONAL", "MATERIAL", "SAFETY", "OTHER", name="checktype")
quality_result = sa.Enum("PENDING", "PASS", "FAIL", "CONDITIONAL_PASS", "NEEDS_REWORK", name="qualityresult")


def _timestamps():
    return [
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        "plc_production_request",
        *_timestamps(),
        sa.Column("request_number", sa.String(length=50), nullable=False),
        sa.Column("customer_id", sa.String(length=64), nullable=True),
        sa.Column("product_name", sa.String(length=100), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("priority", request_priority, nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("specifications", sa.JSON(), nullable=False),
        sa.Column("status", request_status, nullable=False),
    )
    op.create_index("ix_plc_production_request_request_number", "plc_production_request", ["request_number"], unique=True)
    op.create_index("ix_plc_production_request_customer_id", "plc_production_request", ["customer_id"])
    op.create_index("ix_plc_production_request_status", "plc_production_request", ["status"])

    op.create_table(
        "plc_production_batch",
        *_timestamps(),
        sa.Column("batch_number", sa.String(length=50), nullable=False),
        sa.Column("request_id", sa.String(length=36), sa.ForeignKey("plc_production_request.id"), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("scheduled_start", sa.DateTime(), nullable=True),
        sa.Column("scheduled_end", sa.DateTime(), nullable=True),
        sa.Column("actual_start", sa.DateTime(), nullable=True),
        sa.Column("actual_end", sa.DateTime(), nullable=True),
        sa.Column("status", batch_status, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_plc_production_batch_batch_number", "plc_production_batch", ["batch_number"], unique=True)
    op.create_index("ix_plc_production_batch_request_id", "plc_production_batch", ["request_id"])
    op.create_index("ix_plc_production_batch_status", "plc_production_batch", ["status"])
    op.create_index("ix_plc_batch_request_status", "plc_production_batch", ["request_id", "status"])

    op.create_table(
        "plc_production_step",
        *_timestamps(),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("plc_production_batch.id"), nullable=False),
        sa.Column("step_order", sa.Integer(), nullable=False),
        sa.Column("step_name", sa.String(length=100), nullable=False),
        sa.Column("machine_type", sa.String(length=50), nullable=True),
        sa.Column("scheduled_start", sa.DateTime(), nullable=True),
        sa.Column("scheduled_end", sa.DateTime(), nullable=True),
        sa.Column("actual_start", sa.DateTime(), nullable=True),
        sa.Column("actual_end", sa.DateTime(), nullable=True),
        sa.Column("duration_minutes", sa.Integer(), nullable=True),
        sa.Column("machine_id", sa.String(length=64), nullable=True),
        sa.Column("operator_id", sa.String(length=64), nullable=True),
        sa.Column("status", step_status, nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("batch_id", "step_order", name="uq_plc_step_batch_order"),
    )
    op.create_index("ix_plc_production_step_batch_id", "plc_production_step", ["batch_id"])
    op.create_index("ix_plc_production_step_machine_id", "plc_production_step", ["machine_id"])
    op.create_index("ix_plc_production_step_operator_id", "plc_production_step", ["operator_id"])
    op.create_index("ix_plc_production_step_status", "plc_production_step", ["status"])
    op.create_index("ix_plc_step_batch_status", "plc_production_step", ["batch_id", "status"])

    op.create_table(
        "plc_material_allocation",
        *_timestamps(),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("plc_production_batch.id"), nullable=False),
        sa.Column("material_id", sa.String(length=64), nullable=False),
        sa.Column("quantity_required", sa.Float(), nullable=False),
        sa.Column("quantity_allocated", sa.Float(), nullable=False, server_default="0"),
        sa.Column("unit_of_measure", sa.String(length=20), nullable=False),
        sa.Column("status", allocation_status, nullable=False),
        sa.Column("allocation_date", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.UniqueConstraint("batch_id", "material_id", name="uq_plc_alloc_batch_material"),
    )
    op.create_index("ix_plc_material_allocation_batch_id", "plc_material_allocation", ["batch_id"])
    op.create_index("ix_plc_material_allocation_material_id", "plc_material_allocation", ["material_id"])
    op.create_index("ix_plc_material_allocation_status", "plc_material_allocation", ["status"])

    op.create_table(
        "plc_production_feedback",
        *_timestamps(),
        sa.Column("feedback_number", sa.String(length=50), nullable=False),
        sa.Column("batch_id", sa.String(length=36), sa.ForeignKey("plc_production_batch.id"), nullable=True),
        sa.Column("product_name", sa.String(length=255), nullable=False),
        sa.Column("quality_score", sa.Float(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_plc_production_feedback_feedback_number", "plc_production_feedback", ["feedback_number"], unique=True)
    op.create_index("ix_plc_production_feedback_batch_id", "plc_production_feedback", ["batch_id"])

    op.create_table(
        "plc_quality_check",
        *_timestamps(),
        sa.Column("check_number", sa.String(length=50), nullable=False),
        sa.Column("feedback_id", sa.String(length=36), sa.ForeignKey("plc_production_feedback.id"), nullable=False),
        sa.Column("step_id", sa.String(length=36), sa.ForeignKey("plc_production_step.id"), nullable=True),
        sa.Column("check_name", sa.String(length=255), nullable=False),
        sa.Column("check_type", check_type, nullable=False),
        sa.Column("result", quality_result, nullable=False),
        sa.Column("inspector", sa.String(length=128), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
    )
    op.create_index("ix_plc_quality_check_check_number", "plc_quality_check", ["check_number"], unique=True)
    op.create_index("ix_plc_quality_check_feedback_id", "plc_quality_check", ["feedback_id"])
    op.create_index("ix_plc_quality_check_step_id", "plc_quality_check", ["step_id"])
    op.create_index("ix_plc_quality_check_result", "plc_quality_check", ["result"])
    op.create_index("ix_plc_qc_feedback_result", "plc_quality_check", ["feedback_id", "result"])

    op.create_table(
        "plc_audit_log",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("actor", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=False),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("from_status", sa.String(length=24), nullable=True),
        sa.Column("to_status", sa.String(length=24), nullable=True),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
    )
    op.create_index("ix_plc_audit_log_actor", "plc_audit_log", ["actor"])
    op.create_index("ix_plc_audit_log_action", "plc_audit_log", ["action"])
    op.create_index("ix_plc_audit_log_entity_type", "plc_audit_log", ["entity_type"])
    op.create_index("ix_plc_audit_log_entity_id", "plc_audit_log", ["entity_id"])
    op.create_index("ix_plc_audit_log_request_id", "plc_audit_log", ["request_id"])
    op.create_index("ix_plc_audit_entity_time", "plc_audit_log", ["entity_type", "entity_id", "created_at"])

    op.create_table(
        "plc_outbox_event",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("topic", sa.String(length=128), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("entity_type", sa.String(length=64), nullable=True),
        sa.Column("entity_id", sa.String(length=64), nullable=True),
        sa.Column("available_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("delivered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("dead", sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    op.create_index("ix_plc_outbox_event_topic", "plc_outbox_event", ["topic"])
    op.create_index("ix_plc_outbox_event_entity_id", "plc_outbox_event", ["entity_id"])
    op.create_index("ix_plc_outbox_topic_created", "plc_outbox_event", ["topic", "created_at"])
    op.create_index("ix_plc_outbox_delivery", "plc_outbox_event", ["delivered", "dead", "available_at"])


def downgrade():
    op.drop_table("plc_outbox_event")
    op.drop_table("plc_audit_log")
    op.drop_table("plc_quality_check")
    op.drop_table("plc_production_feedback")
    op.drop_table("plc_material_allocation")
    op.drop_table("plc_production_step")
    op.drop_table("plc_production_batch")
    op.drop_table("plc_production_request")

    bind = op.get_bind()
    for enum_type in (quality_result, check_type, allocation_status, step_status, batch_status, request_status, request_priority):
        enum_type.drop(bind, checkfirst=True)
