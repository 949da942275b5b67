"""Chunk descriptors and per-chunk/run telemetry."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Chunk(BaseModel):
    """
    Contiguous page range sent to the inference service in one call.

    Page numbers are 1-indexed and inclusive on both ends.
    """

    model_config = ConfigDict(frozen=True)

    chunk_number: int = Field(..., ge=1)
    total_chunks: int = Field(..., ge=1)
    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "Chunk":
        if self.end_page < self.start_page:
            raise ValueError("end_page must be >= start_page")
        if self.chunk_number > self.total_chunks:
            raise ValueError("chunk_number cannot exceed total_chunks")
        return self

    @property
    def is_first(self) -> bool:
        return self.chunk_number == 1

    @property
    def is_last(self) -> bool:
        return self.chunk_number == self.total_chunks

    @property
    def is_single(self) -> bool:
        """Whole document fits in one chunk; there is no boundary to span."""
        return self.total_chunks == 1

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1

    def contains(self, page_number: int) -> bool:
        return self.start_page <= page_number <= self.end_page


class ChunkTelemetry(BaseModel):
    """Cost and token usage for one chunk's extraction call(s)."""

    chunk_number: int = Field(..., ge=1)
    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)
    ai_model: str = ""
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    cost_usd: float = Field(default=0.0, ge=0.0)
    processing_time_ms: int = Field(default=0, ge=0)
    drafts_found: int = Field(default=0, ge=0)
    drafts_dropped: int = Field(default=0, ge=0)
    encounters_completed: int = Field(default=0, ge=0)
    encounters_continuing: int = Field(default=0, ge=0)
    handoff_received: bool = False
    average_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class RunTelemetry(BaseModel):
    """Running totals across all chunks of a run."""

    chunks: list[ChunkTelemetry] = Field(default_factory=list)
    ai_model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    processing_time_ms: int = 0

    def add(self, chunk: ChunkTelemetry) -> None:
        """Accumulate one chunk's numbers into the totals."""
        self.chunks.append(chunk)
        self.input_tokens += chunk.input_tokens
        self.output_tokens += chunk.output_tokens
        self.cost_usd += chunk.cost_usd
        self.processing_time_ms += chunk.processing_time_ms
        if chunk.ai_model:
            self.ai_model = chunk.ai_model

    @property
    def chunks_processed(self) -> int:
        return len(self.chunks)
