"""Tests for chunk planning and the chunk scheduler."""

import pytest

from conftest import FakeInferenceClient, ai_encounter, scripted_handler
from encdisc.errors import DocumentInputError, InferenceHTTPError, RunFailedError
from encdisc.pipeline.stage_chunk import ChunkScheduler, plan_chunks
from encdisc.pipeline.stage_extract import ChunkExtractor


class TestPlanChunks:
    """Tests for page-range planning."""

    def test_120_pages_at_50(self):
        chunks = plan_chunks(120, 50)

        assert [(c.start_page, c.end_page) for c in chunks] == [(1, 50), (51, 100), (101, 120)]
        assert all(c.total_chunks == 3 for c in chunks)

    @pytest.mark.parametrize(
        "total_pages,chunk_size",
        [(1, 50), (49, 50), (50, 50), (51, 50), (100, 50), (101, 50), (7, 1), (7, 3), (250, 50)],
    )
    def test_chunks_cover_every_page_exactly_once(self, total_pages, chunk_size):
        chunks = plan_chunks(total_pages, chunk_size)

        covered = [page for c in chunks for page in range(c.start_page, c.end_page + 1)]
        assert covered == list(range(1, total_pages + 1))
        assert [c.chunk_number for c in chunks] == list(range(1, len(chunks) + 1))
        assert all(c.page_count <= chunk_size for c in chunks)

    def test_single_chunk_document(self):
        [chunk] = plan_chunks(30, 50)

        assert chunk.is_single
        assert chunk.is_first and chunk.is_last

    @pytest.mark.parametrize("total_pages,chunk_size", [(0, 50), (-1, 50), (10, 0)])
    def test_invalid_input(self, total_pages, chunk_size):
        with pytest.raises(DocumentInputError):
            plan_chunks(total_pages, chunk_size)


class TestChunkScheduler:
    """Tests for the sequential chunk loop."""

    def _scheduler(self, settings, client, recording_sleep):
        extractor = ChunkExtractor(settings, client, sleep=recording_sleep)
        return ChunkScheduler(settings, extractor)

    @pytest.mark.asyncio
    async def test_120_page_document(self, settings, make_document, recording_sleep):
        """Encounter spanning pages 48-53 reconciles into one; others stay separate."""
        client = FakeInferenceClient(
            scripted_handler(
                {
                    1: [
                        ai_encounter("outpatient_visit", [[1, 10]]),
                        ai_encounter("inpatient_admission", [[48, 50]], confidence=0.8),
                    ],
                    2: [
                        ai_encounter(
                            "inpatient_admission", [[51, 53]], confidence=0.85,
                            encounter_id="enc_temp_c001_d001",
                        ),
                        ai_encounter("emergency_visit", [[70, 72]]),
                    ],
                    3: [ai_encounter("specialist_consultation", [[105, 110]])],
                }
            )
        )
        document = make_document(120)

        result = await self._scheduler(settings, client, recording_sleep).run(document)

        assert result.total_chunks == 3
        assert len(client.requests) == 3
        types = [e.encounter_type for e in result.encounters]
        assert types == [
            "outpatient_visit",
            "inpatient_admission",
            "emergency_visit",
            "specialist_consultation",
        ]
        admission = result.encounters[1]
        assert [r.as_list() for r in admission.page_ranges] == [[48, 53]]
        assert admission.source_chunks == [1, 2]
        assert admission.confidence == 0.85
        assert not admission.is_multi_segment

    @pytest.mark.asyncio
    async def test_telemetry_accumulates(self, settings, make_document, recording_sleep):
        client = FakeInferenceClient(scripted_handler({}), input_tokens=1000, output_tokens=100)

        result = await self._scheduler(settings, client, recording_sleep).run(make_document(120))

        assert result.telemetry.chunks_processed == 3
        assert result.telemetry.input_tokens == 3000
        assert result.telemetry.output_tokens == 300
        assert result.telemetry.ai_model == "fake-model"
        assert result.telemetry.cost_usd > 0

    @pytest.mark.asyncio
    async def test_low_confidence_chunk_requires_review(self, settings, make_document, recording_sleep):
        client = FakeInferenceClient(
            scripted_handler({1: [ai_encounter("outpatient_visit", [[1, 3]], confidence=0.4)]})
        )

        result = await self._scheduler(settings, client, recording_sleep).run(make_document(10))

        assert result.requires_manual_review
        assert "Chunk 1 low confidence" in result.review_reasons[0]

    @pytest.mark.asyncio
    async def test_unclosed_chain_flagged_for_review(self, settings, make_document, recording_sleep):
        """A continuing encounter the next chunk never picks up is kept and flagged."""
        client = FakeInferenceClient(
            scripted_handler(
                {
                    1: [ai_encounter("inpatient_admission", [[45, 50]])],
                    2: [ai_encounter("pathology_report", [[60, 61]])],
                }
            )
        )

        result = await self._scheduler(settings, client, recording_sleep).run(make_document(100))

        unclosed = [e for e in result.encounters if e.unclosed_chain]
        assert len(unclosed) == 1
        assert unclosed[0].encounter_type == "inpatient_admission"
        assert result.requires_manual_review
        assert any("Unclosed" in reason for reason in result.review_reasons)

    @pytest.mark.asyncio
    async def test_chunk_failure_carries_telemetry(self, settings, make_document, recording_sleep):
        def handler(request):
            if request.chunk_number == 2:
                raise InferenceHTTPError(status=401, message="invalid api key")
            return {"encounters": []}

        scheduler = self._scheduler(settings, FakeInferenceClient(handler), recording_sleep)

        with pytest.raises(RunFailedError) as exc_info:
            await scheduler.run(make_document(120))

        assert exc_info.value.chunk_number == 2
        assert exc_info.value.telemetry.chunks_processed == 1
