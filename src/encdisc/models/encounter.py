"""Encounter IR models: drafts, handoff packages and reconciled encounters.

Draft encounters are chunk-scoped and provisional. A chain of drafts linked by
``temp_id``/``continues_from`` reconciles into exactly one
``ReconciledEncounter`` with a stable identifier.
"""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base import EncounterStatus

PLANNED_PREFIX = "planned_"
PSEUDO_PREFIX = "pseudo_"


class PageRange(BaseModel):
    """Inclusive 1-indexed page span. Accepts ``[start, end]`` on input."""

    model_config = ConfigDict(frozen=True)

    start: int = Field(..., ge=1)
    end: int = Field(..., ge=1)

    @model_validator(mode="before")
    @classmethod
    def _from_pair(cls, data):
        if isinstance(data, (list, tuple)):
            if len(data) != 2:
                raise ValueError("page range must have exactly two elements")
            data = {"start": data[0], "end": data[1]}
        if isinstance(data, dict) and {"start", "end"} <= data.keys():
            start, end = data["start"], data["end"]
            # Inverted ranges are repaired rather than rejected
            numeric = (int, float)
            if isinstance(start, numeric) and isinstance(end, numeric) and end < start:
                data = {"start": end, "end": start}
        return data

    def as_list(self) -> list[int]:
        return [self.start, self.end]

    def __len__(self) -> int:
        return self.end - self.start + 1


def normalize_page_ranges(ranges) -> tuple[PageRange, ...]:
    """Sort ranges and merge the overlapping or adjacent ones."""
    ordered = sorted(ranges, key=lambda r: (r.start, r.end))
    merged: list[PageRange] = []
    for current in ordered:
        if merged and current.start <= merged[-1].end + 1:
            last = merged[-1]
            merged[-1] = PageRange(start=last.start, end=max(last.end, current.end))
        else:
            merged.append(current)
    return tuple(merged)


def is_planned_type(encounter_type: str) -> bool:
    return encounter_type.startswith(PLANNED_PREFIX)


def is_pseudo_type(encounter_type: str) -> bool:
    return encounter_type.startswith(PSEUDO_PREFIX) and not is_planned_type(encounter_type)


class DraftEncounter(BaseModel):
    """
    Provisional encounter produced by one chunk's extraction.

    The clinical fields come from the AI response (validated at the decode
    boundary). ``chunk_number``, ``draft_index``, ``status``, ``temp_id``,
    ``expected_continuation`` and ``continues_from`` are owned by the pipeline
    and never taken from the model output.
    """

    model_config = ConfigDict(frozen=True)

    # Clinical content
    encounter_type: str = Field(..., min_length=1)
    page_ranges: tuple[PageRange, ...] = Field(default_factory=tuple)
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_real_world_visit: bool = False
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    provider: Optional[str] = None
    facility: Optional[str] = None
    summary: Optional[str] = None
    diagnoses: tuple[str, ...] = Field(default_factory=tuple)
    procedures: tuple[str, ...] = Field(default_factory=tuple)
    source_id: Optional[str] = Field(None, description="Identifier the AI gave this encounter")

    # Pipeline-owned
    chunk_number: int = Field(..., ge=1)
    draft_index: int = Field(..., ge=0)
    status: EncounterStatus = EncounterStatus.COMPLETE
    temp_id: Optional[str] = None
    expected_continuation: Optional[str] = None
    continues_from: Optional[str] = Field(
        None, description="temp_id of the pending chain this fragment continues"
    )

    @property
    def first_page(self) -> Optional[int]:
        return self.page_ranges[0].start if self.page_ranges else None

    @property
    def last_page(self) -> Optional[int]:
        """End of the last page range, as reported."""
        return self.page_ranges[-1].end if self.page_ranges else None

    @property
    def is_continuing(self) -> bool:
        return self.status == EncounterStatus.CONTINUING


class PendingEncounter(BaseModel):
    """A continuing encounter carried across a chunk boundary."""

    temp_id: Optional[str] = None
    encounter_type: str
    expected_continuation: Optional[str] = None
    start_page: int = Field(..., ge=1)
    partial: DraftEncounter
    last_seen_context: str = ""


class HandoffPackage(BaseModel):
    """Carry-forward state from chunk N into chunk N+1's extraction call."""

    from_chunk: int = Field(..., ge=1)
    pending: list[PendingEncounter] = Field(default_factory=list)

    @property
    def temp_ids(self) -> list[str]:
        return [p.temp_id for p in self.pending if p.temp_id]

    @property
    def is_empty(self) -> bool:
        return not self.pending


class ReconciledEncounter(BaseModel):
    """
    Final merge of every draft fragment in one continuation chain.

    ``page_ranges`` are normalized; when they are not a single contiguous
    span ``is_multi_segment`` is set.
    """

    model_config = ConfigDict(from_attributes=True)

    encounter_id: UUID
    encounter_type: str
    is_real_world_visit: bool = False
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    provider: Optional[str] = None
    facility: Optional[str] = None
    summary: Optional[str] = None
    diagnoses: list[str] = Field(default_factory=list)
    procedures: list[str] = Field(default_factory=list)
    page_ranges: list[PageRange] = Field(default_factory=list)
    confidence: float = Field(..., ge=0.0, le=1.0)
    is_multi_segment: bool = False

    # Provenance
    source_chunks: list[int] = Field(default_factory=list)
    source_temp_id: Optional[str] = None
    unclosed_chain: bool = False
    diagnostics: list[str] = Field(default_factory=list)

    @property
    def is_planned(self) -> bool:
        return is_planned_type(self.encounter_type)

    @property
    def is_pseudo(self) -> bool:
        return is_pseudo_type(self.encounter_type)

    @property
    def first_page(self) -> Optional[int]:
        return self.page_ranges[0].start if self.page_ranges else None
