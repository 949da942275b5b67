"""Tests for IR models."""

import uuid

import pytest
from pydantic import ValidationError

from encdisc.models import (
    Chunk,
    ChunkTelemetry,
    Document,
    OCRLine,
    OCRPage,
    PageRange,
    RunTelemetry,
    is_planned_type,
    is_pseudo_type,
    normalize_page_ranges,
)


class TestPageRange:
    def test_from_pair(self):
        assert PageRange.model_validate([3, 7]) == PageRange(start=3, end=7)

    def test_inverted_range_is_swapped(self):
        page_range = PageRange.model_validate([9, 4])

        assert (page_range.start, page_range.end) == (4, 9)
        assert len(page_range) == 6

    @pytest.mark.parametrize("value", [[1], [1, 2, 3], [0, 4], ["a", "b"]])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            PageRange.model_validate(value)

    def test_normalize_merges_overlap_and_adjacency(self):
        ranges = [PageRange(start=s, end=e) for s, e in [(10, 12), (1, 3), (4, 5), (11, 15), (20, 20)]]

        assert [r.as_list() for r in normalize_page_ranges(ranges)] == [[1, 5], [10, 15], [20, 20]]

    def test_normalize_empty(self):
        assert normalize_page_ranges([]) == ()


class TestEncounterTypes:
    @pytest.mark.parametrize(
        "encounter_type,planned,pseudo",
        [
            ("outpatient_visit", False, False),
            ("planned_surgery", True, False),
            ("pseudo_lab_report", False, True),
        ],
    )
    def test_prefixes(self, encounter_type, planned, pseudo):
        assert is_planned_type(encounter_type) is planned
        assert is_pseudo_type(encounter_type) is pseudo


class TestDocument:
    """Tests for the immutable input document."""

    def test_pages_sorted(self):
        document = Document(
            shell_file_id=uuid.uuid4(),
            patient_id=uuid.uuid4(),
            pages=[OCRPage(page_number=n, text=str(n)) for n in (3, 1, 2)],
        )

        assert [p.page_number for p in document.pages] == [1, 2, 3]
        assert [p.page_number for p in document.pages_in_range(2, 3)] == [2, 3]

    def test_missing_pages(self):
        document = Document(
            shell_file_id=uuid.uuid4(),
            patient_id=uuid.uuid4(),
            pages=[OCRPage(page_number=n) for n in (1, 4)],
        )

        assert document.missing_pages() == [2, 3]

    def test_frozen(self):
        document = Document(shell_file_id=uuid.uuid4(), patient_id=uuid.uuid4())

        with pytest.raises(ValidationError):
            document.pages = ()

    def test_plain_text_uses_reading_order(self):
        page = OCRPage(
            page_number=1,
            lines=[OCRLine(text="world", reading_order=2), OCRLine(text="hello", reading_order=1)],
            text="ignored",
        )

        assert page.plain_text() == "hello world"
        assert OCRPage(page_number=2, text="fallback").plain_text() == "fallback"
        assert OCRPage(page_number=3).plain_text() == ""


class TestChunk:
    def test_positions(self):
        middle = Chunk(chunk_number=2, total_chunks=3, start_page=51, end_page=100)

        assert not middle.is_first and not middle.is_last and not middle.is_single
        assert middle.page_count == 50
        assert middle.contains(51) and middle.contains(100) and not middle.contains(101)

    @pytest.mark.parametrize(
        "fields",
        [
            {"chunk_number": 1, "total_chunks": 1, "start_page": 5, "end_page": 4},
            {"chunk_number": 3, "total_chunks": 2, "start_page": 1, "end_page": 4},
        ],
    )
    def test_invalid(self, fields):
        with pytest.raises(ValidationError):
            Chunk(**fields)


class TestRunTelemetry:
    def test_add(self):
        telemetry = RunTelemetry()
        for number in (1, 2):
            telemetry.add(
                ChunkTelemetry(
                    chunk_number=number, start_page=1, end_page=1, ai_model=f"model-{number}",
                    input_tokens=10, output_tokens=5, cost_usd=0.5, processing_time_ms=100,
                )
            )

        assert telemetry.chunks_processed == 2
        assert (telemetry.input_tokens, telemetry.output_tokens) == (20, 10)
        assert telemetry.cost_usd == pytest.approx(1.0)
        assert telemetry.processing_time_ms == 200
        assert telemetry.ai_model == "model-2"
