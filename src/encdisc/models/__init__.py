"""IR (Intermediate Representation) models for the Encounter Discovery Pipeline.

Pydantic models for data flowing through a run. Persisted models support
SQLAlchemy via ``from_attributes``.

Key Design Principles:
1. Input documents are immutable once handed to a run
2. Drafts are chunk-scoped; only reconciled encounters leave the pipeline
3. AI output is decoded into explicit fields, never passed through raw
4. Stable identifiers are derived deterministically so re-runs are idempotent

Model Hierarchy:
- Document → OCRPage → OCRLine
- Chunk → DraftEncounter → HandoffPackage (PendingEncounter)
- ReconciledEncounter → RunManifest → ProcessingMetrics
"""

from .base import (
    EncounterStatus,
    ProcessingStatus,
    utcnow,
)
from .chunk import (
    Chunk,
    ChunkTelemetry,
    RunTelemetry,
)
from .document import (
    Document,
    OCRLine,
    OCRPage,
)
from .encounter import (
    DraftEncounter,
    HandoffPackage,
    PageRange,
    PendingEncounter,
    ReconciledEncounter,
    is_planned_type,
    is_pseudo_type,
    normalize_page_ranges,
)
from .manifest import (
    ProcessingMetrics,
    RunManifest,
    RunResult,
)

__all__ = [
    # Base types
    "EncounterStatus",
    "ProcessingStatus",
    "utcnow",
    # Document
    "Document",
    "OCRLine",
    "OCRPage",
    # Chunk
    "Chunk",
    "ChunkTelemetry",
    "RunTelemetry",
    # Encounter
    "DraftEncounter",
    "HandoffPackage",
    "PageRange",
    "PendingEncounter",
    "ReconciledEncounter",
    "is_planned_type",
    "is_pseudo_type",
    "normalize_page_ranges",
    # Manifest
    "ProcessingMetrics",
    "RunManifest",
    "RunResult",
]
