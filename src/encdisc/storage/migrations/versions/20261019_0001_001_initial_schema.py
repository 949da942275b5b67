"""Initial schema for encounter discovery output.

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""
    # Create enum types
    op.execute("""
        DO $$ BEGIN
            CREATE TYPE processingstatus AS ENUM (
                'pending', 'complete', 'failed', 'needs_review'
            );
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    # Create shell_files table
    op.create_table(
        "shell_files",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("filename", sa.String(255), nullable=True),
        sa.Column("page_count", sa.Integer, nullable=True),
        sa.Column(
            "status",
            postgresql.ENUM("pending", "complete", "failed", "needs_review",
                            name="processingstatus", create_type=False),
            server_default="pending",
        ),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("requires_manual_review", sa.Boolean, server_default="false"),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_shell_files_patient", "shell_files", ["patient_id"])
    op.create_index("ix_shell_files_status", "shell_files", ["status"])

    # Create shell_file_manifests table
    op.create_table(
        "shell_file_manifests",
        sa.Column(
            "shell_file_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shell_files.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("total_pages", sa.Integer, nullable=False),
        sa.Column("total_chunks", sa.Integer, nullable=False),
        sa.Column("total_encounters_found", sa.Integer, server_default="0"),
        sa.Column("ocr_average_confidence", sa.Float, server_default="0"),
        sa.Column("ai_model", sa.String(100), nullable=False),
        sa.Column("ai_cost_usd", sa.Float, server_default="0"),
        sa.Column("processing_time_ms", sa.Integer, server_default="0"),
        sa.Column("pipeline_version", sa.String(50), nullable=False),
        sa.Column("requires_manual_review", sa.Boolean, server_default="false"),
        sa.Column("review_reasons", postgresql.JSONB, server_default="[]"),
        sa.Column("manifest_data", postgresql.JSONB, nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_shell_file_manifests_patient", "shell_file_manifests", ["patient_id"])

    # Create pass05_encounter_metrics table
    op.create_table(
        "pass05_encounter_metrics",
        sa.Column(
            "shell_file_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shell_files.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("encounters_detected", sa.Integer, server_default="0"),
        sa.Column("real_world_encounters", sa.Integer, server_default="0"),
        sa.Column("planned_encounters", sa.Integer, server_default="0"),
        sa.Column("pseudo_encounters", sa.Integer, server_default="0"),
        sa.Column("encounter_confidence_average", sa.Float, server_default="0"),
        sa.Column("encounter_types_found", postgresql.JSONB, server_default="[]"),
        sa.Column("input_tokens", sa.Integer, server_default="0"),
        sa.Column("output_tokens", sa.Integer, server_default="0"),
        sa.Column("total_tokens", sa.Integer, server_default="0"),
        sa.Column("ai_model_used", sa.String(100), nullable=False),
        sa.Column("ai_cost_usd", sa.Float, server_default="0"),
        sa.Column("processing_time_ms", sa.Integer, server_default="0"),
        sa.Column("total_pages", sa.Integer, nullable=False),
        sa.Column("total_chunks", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create healthcare_encounters table
    op.create_table(
        "healthcare_encounters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "shell_file_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shell_files.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("encounter_type", sa.String(100), nullable=False),
        sa.Column("is_real_world_visit", sa.Boolean, server_default="false"),
        sa.Column("encounter_start_date", sa.String(50), nullable=True),
        sa.Column("encounter_end_date", sa.String(50), nullable=True),
        sa.Column("provider_name", sa.String(255), nullable=True),
        sa.Column("facility_name", sa.String(255), nullable=True),
        sa.Column("summary", sa.Text, nullable=True),
        sa.Column("diagnoses", postgresql.JSONB, server_default="[]"),
        sa.Column("procedures", postgresql.JSONB, server_default="[]"),
        sa.Column("page_ranges", postgresql.JSONB, server_default="[]"),
        sa.Column("confidence", sa.Float, nullable=False),
        sa.Column("is_multi_segment", sa.Boolean, server_default="false"),
        sa.Column("is_planned", sa.Boolean, server_default="false"),
        sa.Column("is_pseudo", sa.Boolean, server_default="false"),
        sa.Column("source_chunks", postgresql.JSONB, server_default="[]"),
        sa.Column("source_temp_id", sa.String(100), nullable=True),
        sa.Column("unclosed_chain", sa.Boolean, server_default="false"),
        sa.Column("diagnostics", postgresql.JSONB, server_default="[]"),
        sa.Column("pipeline_version", sa.String(50), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_healthcare_encounters_shell_file", "healthcare_encounters", ["shell_file_id"])
    op.create_index("ix_healthcare_encounters_patient", "healthcare_encounters", ["patient_id"])
    op.create_index("ix_healthcare_encounters_type", "healthcare_encounters", ["encounter_type"])

    # Create pass05_chunk_results table
    op.create_table(
        "pass05_chunk_results",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "shell_file_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shell_files.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("chunk_number", sa.Integer, nullable=False),
        sa.Column("page_start", sa.Integer, nullable=False),
        sa.Column("page_end", sa.Integer, nullable=False),
        sa.Column("ai_model_used", sa.String(100), server_default=""),
        sa.Column("input_tokens", sa.Integer, server_default="0"),
        sa.Column("output_tokens", sa.Integer, server_default="0"),
        sa.Column("ai_cost_usd", sa.Float, server_default="0"),
        sa.Column("processing_time_ms", sa.Integer, server_default="0"),
        sa.Column("drafts_found", sa.Integer, server_default="0"),
        sa.Column("drafts_dropped", sa.Integer, server_default="0"),
        sa.Column("encounters_completed", sa.Integer, server_default="0"),
        sa.Column("encounters_continuing", sa.Integer, server_default="0"),
        sa.Column("handoff_received", sa.Boolean, server_default="false"),
        sa.Column("confidence_score", sa.Float, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("shell_file_id", "chunk_number", name="uq_pass05_chunk_results_shell_chunk"),
    )

    # Create job_queue table
    op.create_table(
        "job_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("job_type", sa.String(50), nullable=False),
        sa.Column("shell_file_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("payload", postgresql.JSONB, server_default="{}"),
        sa.Column("attempts", sa.Integer, server_default="0"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_job_queue_status_scheduled", "job_queue", ["status", "scheduled_at"])


def downgrade() -> None:
    """Drop all tables."""
    # Drop tables in reverse order of creation
    op.drop_table("job_queue")
    op.drop_table("pass05_chunk_results")
    op.drop_table("healthcare_encounters")
    op.drop_table("pass05_encounter_metrics")
    op.drop_table("shell_file_manifests")
    op.drop_table("shell_files")

    # Drop enum types
    op.execute("DROP TYPE IF EXISTS processingstatus")
