"""create_render_pipeline_tables

Revision ID: 3f9d2c7a41b0
Revises:
Create Date: 2026-10-18 09:12:40.118305

"""

from typing import Sequence, Union

import sqlalchemy as sa
import sqlmodel
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f9d2c7a41b0"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = (
    "QUEUED",
    "PROCESSING",
    "CLASSIFIED",
    "FAILED",
    "GENERATING",
    "QC_REVIEW",
    "MANUAL_REVIEW",
    "COMPLETED",
    "FATAL_ERROR",
)
RENDER_STATUSES = (
    "UNCLASSIFIED",
    "CLASSIFIED",
    "GENERATING",
    "PASSED",
    "MANUAL_REVIEW_NEEDED",
    "ESCALATED",
    "FAILED",
)


def upgrade() -> None:
    """Create jobs, renders and generation_attempts tables."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("property_id", sa.Uuid(), nullable=False),
        sa.Column("status", sa.Enum(*JOB_STATUSES, name="jobstatus"), nullable=False),
        sa.Column("batch_id", sa.Uuid(), nullable=True),
        sa.Column("source_images", sa.JSON(), nullable=False),
        sa.Column("retry_count", sa.Integer(), nullable=False),
        sa.Column("retryable", sa.Boolean(), nullable=False),
        sa.Column("last_error", sqlmodel.sql.sqltypes.AutoString(length=2000), nullable=True),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False),
        sa.Column("worker_id", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_jobs_property_id"), "jobs", ["property_id"], unique=False)
    op.create_index(op.f("ix_jobs_status"), "jobs", ["status"], unique=False)
    op.create_index(op.f("ix_jobs_created_at"), "jobs", ["created_at"], unique=False)
    # Dispatcher claim query: WHERE status = 'QUEUED' AND available_at <= now
    op.create_index("idx_jobs_status_available_at", "jobs", ["status", "available_at"], unique=False)

    op.create_table(
        "renders",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("source_image_url", sqlmodel.sql.sqltypes.AutoString(), nullable=False),
        sa.Column("status", sa.Enum(*RENDER_STATUSES, name="renderstatus"), nullable=False),
        sa.Column("detected_shot_type", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("generated_prompt", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column(
            "technical_tags",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=False,
        ),
        sa.Column(
            "motion_recommendation", sqlmodel.sql.sqltypes.AutoString(length=50), nullable=True
        ),
        sa.Column("full_analysis", sa.JSON(), nullable=True),
        sa.Column("processing_time_sec", sa.Integer(), nullable=True),
        sa.Column("processing_time_ms", sa.Integer(), nullable=True),
        sa.Column("error_message", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "source_image_url", name="uq_renders_job_image"),
    )
    op.create_index(op.f("ix_renders_job_id"), "renders", ["job_id"], unique=False)
    op.create_index(
        op.f("ix_renders_detected_shot_type"), "renders", ["detected_shot_type"], unique=False
    )
    op.create_index(op.f("ix_renders_created_at"), "renders", ["created_at"], unique=False)
    # Tag containment queries (technical_tags @> '["pool"]')
    op.create_index(
        "idx_renders_technical_tags",
        "renders",
        ["technical_tags"],
        unique=False,
        postgresql_using="gin",
    )

    op.create_table(
        "generation_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("render_id", sa.Uuid(), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("parameters", sa.JSON(), nullable=False),
        sa.Column("qc_verdict", sa.Enum("PASS", "FAIL", name="qcverdict"), nullable=True),
        sa.Column("failure_reason", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("suggested_fix", sqlmodel.sql.sqltypes.AutoString(length=100), nullable=True),
        sa.Column("artifact_ref", sqlmodel.sql.sqltypes.AutoString(), nullable=True),
        sa.Column("generator_response", sa.JSON(), nullable=True),
        sa.Column("qc_response", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("evaluated_at", sa.DateTime(), nullable=True),
        sa.CheckConstraint("attempt_number >= 1 AND attempt_number <= 5", name="valid_attempt"),
        sa.ForeignKeyConstraint(["render_id"], ["renders.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("render_id", "attempt_number", name="uq_attempts_render_number"),
    )
    op.create_index(
        op.f("ix_generation_attempts_render_id"), "generation_attempts", ["render_id"], unique=False
    )
    op.create_index(
        op.f("ix_generation_attempts_qc_verdict"), "generation_attempts", ["qc_verdict"], unique=False
    )


def downgrade() -> None:
    """Drop render pipeline tables and their enum types."""
    op.drop_index(op.f("ix_generation_attempts_qc_verdict"), table_name="generation_attempts")
    op.drop_index(op.f("ix_generation_attempts_render_id"), table_name="generation_attempts")
    op.drop_table("generation_attempts")

    op.drop_index("idx_renders_technical_tags", table_name="renders", postgresql_using="gin")
    op.drop_index(op.f("ix_renders_created_at"), table_name="renders")
    op.drop_index(op.f("ix_renders_detected_shot_type"), table_name="renders")
    op.drop_index(op.f("ix_renders_job_id"), table_name="renders")
    op.drop_table("renders")

    op.drop_index("idx_jobs_status_available_at", table_name="jobs")
    op.drop_index(op.f("ix_jobs_created_at"), table_name="jobs")
    op.drop_index(op.f("ix_jobs_status"), table_name="jobs")
    op.drop_index(op.f("ix_jobs_property_id"), table_name="jobs")
    op.drop_table("jobs")

    sa.Enum(name="qcverdict").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="renderstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="jobstatus").drop(op.get_bind(), checkfirst=True)
