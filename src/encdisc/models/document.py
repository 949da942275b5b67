"""Document-level IR models: the OCR'd input handed to a run."""

from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OCRLine(BaseModel):
    """One recognized line of text with its reading position."""

    model_config = ConfigDict(frozen=True)

    text: str
    reading_order: int = Field(default=0, ge=0)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    bbox: Optional[tuple[float, float, float, float]] = Field(
        None, description="x, y, width, height in page pixels"
    )


class OCRPage(BaseModel):
    """Recognized text and annotations for a single page."""

    model_config = ConfigDict(frozen=True)

    page_number: int = Field(..., ge=1, description="1-indexed page number")
    lines: tuple[OCRLine, ...] = Field(default_factory=tuple)
    text: Optional[str] = Field(None, description="Pre-joined text if upstream supplied it")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)

    def plain_text(self) -> str:
        """Text in reading order, falling back to the pre-joined field."""
        if self.lines:
            ordered = sorted(self.lines, key=lambda line: line.reading_order)
            return " ".join(line.text for line in ordered)
        return self.text or ""


class Document(BaseModel):
    """
    Shell file handed to the pipeline.

    Immutable once constructed. Pages must be numbered 1..N without gaps;
    the run validates this before any chunk is processed.
    """

    model_config = ConfigDict(frozen=True)

    shell_file_id: UUID
    patient_id: UUID
    pages: tuple[OCRPage, ...] = Field(default_factory=tuple)

    @model_validator(mode="before")
    @classmethod
    def _sort_pages(cls, data):
        if isinstance(data, dict) and data.get("pages"):
            pages = data["pages"]
            data = dict(data)
            data["pages"] = sorted(
                pages,
                key=lambda p: p["page_number"] if isinstance(p, dict) else p.page_number,
            )
        return data

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def ocr_average_confidence(self) -> float:
        """Mean page-level OCR confidence (0.0 for an empty document)."""
        if not self.pages:
            return 0.0
        return sum(p.confidence for p in self.pages) / len(self.pages)

    def missing_pages(self) -> list[int]:
        """Page numbers absent from 1..max(page_number)."""
        present = {p.page_number for p in self.pages}
        highest = max(present, default=0)
        return [n for n in range(1, highest + 1) if n not in present]

    def pages_in_range(self, start_page: int, end_page: int) -> list[OCRPage]:
        """Pages with start_page <= page_number <= end_page, in order."""
        return [p for p in self.pages if start_page <= p.page_number <= end_page]
