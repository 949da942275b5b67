"""SQLAlchemy ORM models for the Encounter Discovery Pipeline.

These models define the database schema for persisted run output.
Column types are portable: ``Uuid`` and ``JSON`` (``JSONB`` on PostgreSQL),
so the same models run against SQLite in tests.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from encdisc.models.base import ProcessingStatus

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")

ProcessingStatusType = Enum(
    ProcessingStatus,
    name="processingstatus",
    values_callable=lambda enum: [member.value for member in enum],
)


class ShellFileORM(Base):
    """Shell file table - one uploaded document per row."""

    __tablename__ = "shell_files"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    patient_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    filename: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Processing state
    status: Mapped[ProcessingStatus] = mapped_column(
        ProcessingStatusType, default=ProcessingStatus.PENDING
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, default=False)
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_shell_files_patient", "patient_id"),
        Index("ix_shell_files_status", "status"),
    )


class ManifestORM(Base):
    """Run manifest - exactly one per processed shell file."""

    __tablename__ = "shell_file_manifests"

    shell_file_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("shell_files.id", ondelete="CASCADE"), primary_key=True
    )
    patient_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    total_pages: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)
    total_encounters_found: Mapped[int] = mapped_column(Integer, default=0)
    ocr_average_confidence: Mapped[float] = mapped_column(Float, default=0.0)

    # AI usage
    ai_model: Mapped[str] = mapped_column(String(100), nullable=False)
    ai_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    pipeline_version: Mapped[str] = mapped_column(String(50), nullable=False)

    # Review
    requires_manual_review: Mapped[bool] = mapped_column(Boolean, default=False)
    review_reasons: Mapped[list] = mapped_column(JSONType, default=list)

    # Full manifest snapshot
    manifest_data: Mapped[dict] = mapped_column(JSONType, nullable=False)

    completed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_shell_file_manifests_patient", "patient_id"),
    )


class EncounterMetricsORM(Base):
    """Processing metrics derived from the manifest in the same commit."""

    __tablename__ = "pass05_encounter_metrics"

    shell_file_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("shell_files.id", ondelete="CASCADE"), primary_key=True
    )
    patient_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    encounters_detected: Mapped[int] = mapped_column(Integer, default=0)
    real_world_encounters: Mapped[int] = mapped_column(Integer, default=0)
    planned_encounters: Mapped[int] = mapped_column(Integer, default=0)
    pseudo_encounters: Mapped[int] = mapped_column(Integer, default=0)
    encounter_confidence_average: Mapped[float] = mapped_column(Float, default=0.0)
    encounter_types_found: Mapped[list] = mapped_column(JSONType, default=list)

    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    ai_model_used: Mapped[str] = mapped_column(String(100), nullable=False)
    ai_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    total_pages: Mapped[int] = mapped_column(Integer, nullable=False)
    total_chunks: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class EncounterORM(Base):
    """Reconciled healthcare encounters."""

    __tablename__ = "healthcare_encounters"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    shell_file_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("shell_files.id", ondelete="CASCADE"), nullable=False
    )
    patient_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)

    # Clinical content
    encounter_type: Mapped[str] = mapped_column(String(100), nullable=False)
    is_real_world_visit: Mapped[bool] = mapped_column(Boolean, default=False)
    encounter_start_date: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    encounter_end_date: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    provider_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    facility_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    diagnoses: Mapped[list] = mapped_column(JSONType, default=list)
    procedures: Mapped[list] = mapped_column(JSONType, default=list)

    # Location and classification
    page_ranges: Mapped[list] = mapped_column(JSONType, default=list)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    is_multi_segment: Mapped[bool] = mapped_column(Boolean, default=False)
    is_planned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_pseudo: Mapped[bool] = mapped_column(Boolean, default=False)

    # Provenance
    source_chunks: Mapped[list] = mapped_column(JSONType, default=list)
    source_temp_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    unclosed_chain: Mapped[bool] = mapped_column(Boolean, default=False)
    diagnostics: Mapped[list] = mapped_column(JSONType, default=list)
    pipeline_version: Mapped[str] = mapped_column(String(50), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_healthcare_encounters_shell_file", "shell_file_id"),
        Index("ix_healthcare_encounters_patient", "patient_id"),
        Index("ix_healthcare_encounters_type", "encounter_type"),
    )


class ChunkResultORM(Base):
    """Per-chunk audit row: tokens, cost and draft counts."""

    __tablename__ = "pass05_chunk_results"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    shell_file_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("shell_files.id", ondelete="CASCADE"), nullable=False
    )
    chunk_number: Mapped[int] = mapped_column(Integer, nullable=False)
    page_start: Mapped[int] = mapped_column(Integer, nullable=False)
    page_end: Mapped[int] = mapped_column(Integer, nullable=False)

    ai_model_used: Mapped[str] = mapped_column(String(100), default="")
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    ai_cost_usd: Mapped[float] = mapped_column(Float, default=0.0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)

    drafts_found: Mapped[int] = mapped_column(Integer, default=0)
    drafts_dropped: Mapped[int] = mapped_column(Integer, default=0)
    encounters_completed: Mapped[int] = mapped_column(Integer, default=0)
    encounters_continuing: Mapped[int] = mapped_column(Integer, default=0)
    handoff_received: Mapped[bool] = mapped_column(Boolean, default=False)
    confidence_score: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("shell_file_id", "chunk_number", name="uq_pass05_chunk_results_shell_chunk"),
    )


class JobORM(Base):
    """Durable work queue; failed jobs are pushed back with a delay."""

    __tablename__ = "job_queue"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    shell_file_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    payload: Mapped[dict] = mapped_column(JSONType, default=dict)

    attempts: Mapped[int] = mapped_column(Integer, default=0)
    scheduled_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_job_queue_status_scheduled", "status", "scheduled_at"),
    )
