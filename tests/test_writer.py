"""Tests for atomic run persistence and the repositories reading it back."""

import asyncio
import uuid

import pytest
from sqlalchemy import func, select

from encdisc.errors import PersistenceError
from encdisc.models import (
    ChunkTelemetry,
    PageRange,
    ProcessingStatus,
    ReconciledEncounter,
    RunManifest,
    RunTelemetry,
)
from encdisc.pipeline.stage_reconcile import compute_processing_metrics, stable_encounter_id
from encdisc.storage import (
    AtomicManifestWriter,
    ChunkResultORM,
    EncounterMetricsORM,
    EncounterORM,
    EncounterRepository,
    JobQueueRescheduler,
    JobRepository,
    ManifestORM,
    ManifestRepository,
    ShellFileRepository,
)


def build_manifest(shell_file_id, patient_id, encounter_types, requires_review=False):
    encounters = [
        ReconciledEncounter(
            encounter_id=stable_encounter_id(shell_file_id, f"c1:d{index}"),
            encounter_type=encounter_type,
            confidence=0.9,
            is_real_world_visit=True,
            page_ranges=[PageRange(start=index + 1, end=index + 1)],
            source_chunks=[1],
        )
        for index, encounter_type in enumerate(encounter_types)
    ]
    return RunManifest(
        shell_file_id=shell_file_id,
        patient_id=patient_id,
        total_pages=60,
        total_chunks=2,
        ocr_average_confidence=0.95,
        ai_model="fake-model",
        ai_cost_usd=0.01,
        pipeline_version="test",
        encounters=encounters,
        requires_manual_review=requires_review,
        review_reasons=["Chunk 2 low confidence: 0.40"] if requires_review else [],
    )


def build_telemetry():
    telemetry = RunTelemetry()
    for number, (start, end) in enumerate([(1, 50), (51, 60)], start=1):
        telemetry.add(
            ChunkTelemetry(
                chunk_number=number,
                start_page=start,
                end_page=end,
                ai_model="fake-model",
                input_tokens=1000,
                output_tokens=100,
                cost_usd=0.005,
                drafts_found=1,
                average_confidence=0.9,
            )
        )
    return telemetry


async def count_rows(session_factory, model, shell_file_id):
    async with session_factory() as session:
        result = await session.execute(
            select(func.count()).select_from(model).where(model.shell_file_id == shell_file_id)
        )
        return result.scalar_one()


@pytest.fixture
def ids():
    return uuid.uuid4(), uuid.uuid4()


@pytest.fixture
def writer(session_factory, settings, recording_sleep):
    return AtomicManifestWriter(session_factory, settings, sleep=recording_sleep)


class TestAtomicManifestWriter:
    """Tests for the single-transaction commit."""

    @pytest.mark.asyncio
    async def test_writes_every_row(self, writer, session_factory, ids):
        shell_file_id, patient_id = ids
        manifest = build_manifest(shell_file_id, patient_id, ["outpatient_visit", "planned_follow_up"])
        telemetry = build_telemetry()

        await writer.write_run(manifest, compute_processing_metrics(manifest, telemetry), telemetry)

        assert await count_rows(session_factory, EncounterORM, shell_file_id) == 2
        assert await count_rows(session_factory, ManifestORM, shell_file_id) == 1
        assert await count_rows(session_factory, EncounterMetricsORM, shell_file_id) == 1
        assert await count_rows(session_factory, ChunkResultORM, shell_file_id) == 2

        async with session_factory() as session:
            shell_file = await ShellFileRepository(session).get_by_id(shell_file_id)
            metrics = await ManifestRepository(session).load_metrics(shell_file_id)
            stored = await ManifestRepository(session).load_manifest(shell_file_id)

        assert shell_file.status == ProcessingStatus.COMPLETE
        assert shell_file.page_count == 60
        assert metrics.planned_count == 1
        assert metrics.input_tokens == 2000
        assert [e.encounter_id for e in stored.encounters] == [e.encounter_id for e in manifest.encounters]

    @pytest.mark.asyncio
    async def test_review_flag_sets_status(self, writer, session_factory, ids):
        shell_file_id, patient_id = ids
        manifest = build_manifest(shell_file_id, patient_id, ["outpatient_visit"], requires_review=True)

        await writer.write_run(manifest, compute_processing_metrics(manifest))

        async with session_factory() as session:
            shell_file = await ShellFileRepository(session).get_by_id(shell_file_id)
            flagged = await ShellFileRepository(session).list_needing_review()

        assert shell_file.status == ProcessingStatus.NEEDS_REVIEW
        assert shell_file.requires_manual_review
        assert [s.id for s in flagged] == [shell_file_id]

    @pytest.mark.asyncio
    async def test_rewrite_replaces_rows(self, writer, session_factory, ids):
        """Writing the same run twice leaves one copy of every row."""
        shell_file_id, patient_id = ids
        manifest = build_manifest(shell_file_id, patient_id, ["outpatient_visit", "emergency_visit"])
        telemetry = build_telemetry()
        metrics = compute_processing_metrics(manifest, telemetry)

        await writer.write_run(manifest, metrics, telemetry)
        await writer.write_run(manifest, metrics, telemetry)

        assert await count_rows(session_factory, EncounterORM, shell_file_id) == 2
        assert await count_rows(session_factory, ChunkResultORM, shell_file_id) == 2
        assert await count_rows(session_factory, ManifestORM, shell_file_id) == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_nothing(self, writer, session_factory, ids, monkeypatch):
        shell_file_id, patient_id = ids
        manifest = build_manifest(shell_file_id, patient_id, ["outpatient_visit"])

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(writer, "_chunk_rows", broken)

        with pytest.raises(PersistenceError):
            await writer.write_run(manifest, compute_processing_metrics(manifest), build_telemetry())

        assert await count_rows(session_factory, EncounterORM, shell_file_id) == 0
        assert await count_rows(session_factory, ManifestORM, shell_file_id) == 0
        async with session_factory() as session:
            assert await ShellFileRepository(session).get_by_id(shell_file_id) is None

    @pytest.mark.asyncio
    async def test_failed_rewrite_keeps_previous_run(self, writer, session_factory, ids, monkeypatch):
        shell_file_id, patient_id = ids
        first = build_manifest(shell_file_id, patient_id, ["outpatient_visit", "emergency_visit"])
        await writer.write_run(first, compute_processing_metrics(first))

        def broken(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(writer, "_chunk_rows", broken)
        second = build_manifest(shell_file_id, patient_id, ["outpatient_visit"])

        with pytest.raises(PersistenceError):
            await writer.write_run(second, compute_processing_metrics(second), build_telemetry())

        assert await count_rows(session_factory, EncounterORM, shell_file_id) == 2

    @pytest.mark.asyncio
    async def test_commit_timeout_is_retried(self, session_factory, settings, recording_sleep, ids):
        shell_file_id, patient_id = ids
        writer = AtomicManifestWriter(
            session_factory,
            settings.model_copy(update={"db_commit_timeout_seconds": 0.05}),
            sleep=recording_sleep,
        )
        original = writer._write_once
        calls = []

        async def slow_first(*args):
            calls.append(1)
            if len(calls) == 1:
                await asyncio.sleep(1)
            await original(*args)

        writer._write_once = slow_first
        manifest = build_manifest(shell_file_id, patient_id, ["outpatient_visit"])

        await writer.write_run(manifest, compute_processing_metrics(manifest))

        assert len(calls) == 2
        assert len(recording_sleep.delays) == 1
        assert await count_rows(session_factory, EncounterORM, shell_file_id) == 1


class TestRepositories:
    """Tests for read paths and the job queue."""

    @pytest.mark.asyncio
    async def test_encounters_in_page_order(self, writer, session_factory, ids):
        shell_file_id, patient_id = ids
        manifest = build_manifest(shell_file_id, patient_id, ["a_visit", "b_visit", "c_visit"])
        await writer.write_run(manifest, compute_processing_metrics(manifest))

        async with session_factory() as session:
            repo = EncounterRepository(session)
            rows = await repo.list_by_shell_file(shell_file_id)
            count = await repo.count_by_shell_file(shell_file_id)
            first = await repo.get_by_id(manifest.encounters[0].encounter_id)

        assert [r.encounter_type for r in rows] == ["a_visit", "b_visit", "c_visit"]
        assert rows[0].page_ranges == [[1, 1]]
        assert count == 3
        assert first.encounter_type == "a_visit"

    @pytest.mark.asyncio
    async def test_manifest_missing(self, session_factory):
        async with session_factory() as session:
            repo = ManifestRepository(session)
            assert await repo.load_manifest(uuid.uuid4()) is None
            assert not await repo.exists(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_job_reschedule(self, session_factory):
        async with session_factory() as session:
            async with session.begin():
                job = await JobRepository(session).enqueue("encounter_discovery", payload={"x": 1})
                job_id, scheduled = job.id, job.scheduled_at

        await JobQueueRescheduler(session_factory).reschedule(str(job_id), 300, "retries exhausted")

        async with session_factory() as session:
            job = await JobRepository(session).get_by_id(job_id)

        assert job.status == "pending"
        assert job.attempts == 1
        assert job.last_error == "retries exhausted"
        assert job.scheduled_at.replace(tzinfo=None) > scheduled.replace(tzinfo=None)

    @pytest.mark.asyncio
    async def test_reschedule_unknown_job(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(LookupError):
                await JobRepository(session).reschedule(str(uuid.uuid4()), 10, "x")
