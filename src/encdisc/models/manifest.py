"""Run manifest and processing metrics."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .base import utcnow
from .encounter import ReconciledEncounter


class RunManifest(BaseModel):
    """
    Document-level aggregate committed atomically at the end of a run.

    Built once per run and written exactly once.
    """

    shell_file_id: UUID
    patient_id: UUID
    total_pages: int = Field(..., ge=1)
    total_chunks: int = Field(..., ge=1)
    ocr_average_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    ai_model: str
    ai_cost_usd: float = Field(default=0.0, ge=0.0)
    processing_time_ms: int = Field(default=0, ge=0)
    pipeline_version: str
    encounters: list[ReconciledEncounter] = Field(default_factory=list)

    # Review flags
    requires_manual_review: bool = False
    review_reasons: list[str] = Field(default_factory=list)

    completed_at: datetime = Field(default_factory=utcnow)

    @property
    def total_encounters_found(self) -> int:
        return len(self.encounters)


class ProcessingMetrics(BaseModel):
    """
    Counts derived from the manifest right before persistence.

    Never written independently of the manifest.
    """

    encounters_detected: int = Field(default=0, ge=0)
    real_world_count: int = Field(default=0, ge=0)
    planned_count: int = Field(default=0, ge=0)
    pseudo_count: int = Field(default=0, ge=0)
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    average_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    encounter_types: list[str] = Field(default_factory=list)


class RunResult(BaseModel):
    """Outcome returned to the caller of a document run."""

    shell_file_id: UUID
    manifest: RunManifest
    metrics: Optional[ProcessingMetrics] = None
    already_processed: bool = False
