"""Atomic persistence of one run's output.

Everything a run produces (encounters, manifest, metrics, per-chunk audit
rows and the shell file status) is written in ONE transaction. Rows for the
same shell file are deleted and re-inserted inside that transaction, and all
ids are deterministic, so repeating a write replaces rather than duplicates.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from encdisc.config import Settings
from encdisc.errors import ExternalCallError, PersistenceError
from encdisc.models import ProcessingMetrics, ProcessingStatus, RunManifest, RunTelemetry
from encdisc.pipeline.retry import RetryContext, RetryPolicy, retry_with_backoff

from .orm_models import (
    ChunkResultORM,
    EncounterMetricsORM,
    EncounterORM,
    ManifestORM,
)
from .repositories import ShellFileRepository

logger = structlog.get_logger(__name__)

CHUNK_RESULT_NAMESPACE = uuid.UUID("0b8f4e3d-2c61-5a9e-8f17-4d3b6a2c9e05")


def chunk_result_id(shell_file_id: uuid.UUID, chunk_number: int) -> uuid.UUID:
    return uuid.uuid5(CHUNK_RESULT_NAMESPACE, f"{shell_file_id}:{chunk_number}")


class AtomicManifestWriter:
    """Commits a finished run in a single transaction.

    The commit is bounded by ``Settings.db_commit_timeout_seconds`` and runs
    inside the datastore retry policy. Failures after retries surface as one
    ``PersistenceError``; nothing is visible to readers in that case.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        retry_context: Optional[RetryContext] = None,
        **retry_kwargs,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self.retry_context = retry_context or RetryContext()
        self.retry_kwargs = retry_kwargs

    async def write_run(
        self,
        manifest: RunManifest,
        metrics: ProcessingMetrics,
        telemetry: Optional[RunTelemetry] = None,
    ) -> None:
        """Write every row of a run, or none of them.

        Raises:
            PersistenceError: the transaction could not be committed.
        """
        timeout = self.settings.db_commit_timeout_seconds

        async def attempt() -> None:
            await asyncio.wait_for(self._write_once(manifest, metrics, telemetry), timeout=timeout)

        try:
            await retry_with_backoff(
                attempt,
                RetryPolicy.for_datastore_write(self.settings),
                self.retry_context,
                **self.retry_kwargs,
            )
        except ExternalCallError as exc:
            logger.error(
                "persist.failed",
                shell_file_id=str(manifest.shell_file_id),
                error=str(exc),
            )
            raise PersistenceError(
                shell_file_id=str(manifest.shell_file_id),
                message=f"Atomic manifest commit failed: {exc}",
            ) from exc

        logger.info(
            "persist.committed",
            shell_file_id=str(manifest.shell_file_id),
            encounters=manifest.total_encounters_found,
            requires_manual_review=manifest.requires_manual_review,
        )

    async def _write_once(
        self,
        manifest: RunManifest,
        metrics: ProcessingMetrics,
        telemetry: Optional[RunTelemetry],
    ) -> None:
        shell_file_id = manifest.shell_file_id

        async with self.session_factory() as session:
            async with session.begin():
                shell_file = await ShellFileRepository(session).get_or_create(
                    shell_file_id, manifest.patient_id, page_count=manifest.total_pages
                )

                for table in (EncounterORM, ChunkResultORM, EncounterMetricsORM, ManifestORM):
                    await session.execute(delete(table).where(table.shell_file_id == shell_file_id))

                session.add_all(self._encounter_rows(manifest))
                session.add(self._manifest_row(manifest))
                session.add(self._metrics_row(manifest, metrics))
                if telemetry is not None:
                    session.add_all(self._chunk_rows(shell_file_id, telemetry))

                shell_file.status = (
                    ProcessingStatus.NEEDS_REVIEW
                    if manifest.requires_manual_review
                    else ProcessingStatus.COMPLETE
                )
                shell_file.requires_manual_review = manifest.requires_manual_review
                shell_file.page_count = manifest.total_pages
                shell_file.processing_completed_at = manifest.completed_at
                shell_file.error_message = None

                await session.flush()

    def _encounter_rows(self, manifest: RunManifest) -> list[EncounterORM]:
        return [
            EncounterORM(
                id=encounter.encounter_id,
                shell_file_id=manifest.shell_file_id,
                patient_id=manifest.patient_id,
                encounter_type=encounter.encounter_type,
                is_real_world_visit=encounter.is_real_world_visit,
                encounter_start_date=encounter.start_date,
                encounter_end_date=encounter.end_date,
                provider_name=encounter.provider,
                facility_name=encounter.facility,
                summary=encounter.summary,
                diagnoses=list(encounter.diagnoses),
                procedures=list(encounter.procedures),
                page_ranges=[r.as_list() for r in encounter.page_ranges],
                confidence=encounter.confidence,
                is_multi_segment=encounter.is_multi_segment,
                is_planned=encounter.is_planned,
                is_pseudo=encounter.is_pseudo,
                source_chunks=list(encounter.source_chunks),
                source_temp_id=encounter.source_temp_id,
                unclosed_chain=encounter.unclosed_chain,
                diagnostics=list(encounter.diagnostics),
                pipeline_version=manifest.pipeline_version,
            )
            for encounter in manifest.encounters
        ]

    def _manifest_row(self, manifest: RunManifest) -> ManifestORM:
        return ManifestORM(
            shell_file_id=manifest.shell_file_id,
            patient_id=manifest.patient_id,
            total_pages=manifest.total_pages,
            total_chunks=manifest.total_chunks,
            total_encounters_found=manifest.total_encounters_found,
            ocr_average_confidence=manifest.ocr_average_confidence,
            ai_model=manifest.ai_model,
            ai_cost_usd=manifest.ai_cost_usd,
            processing_time_ms=manifest.processing_time_ms,
            pipeline_version=manifest.pipeline_version,
            requires_manual_review=manifest.requires_manual_review,
            review_reasons=list(manifest.review_reasons),
            manifest_data=manifest.model_dump(mode="json"),
            completed_at=manifest.completed_at,
        )

    def _metrics_row(self, manifest: RunManifest, metrics: ProcessingMetrics) -> EncounterMetricsORM:
        return EncounterMetricsORM(
            shell_file_id=manifest.shell_file_id,
            patient_id=manifest.patient_id,
            encounters_detected=metrics.encounters_detected,
            real_world_encounters=metrics.real_world_count,
            planned_encounters=metrics.planned_count,
            pseudo_encounters=metrics.pseudo_count,
            encounter_confidence_average=metrics.average_confidence,
            encounter_types_found=list(metrics.encounter_types),
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            total_tokens=metrics.input_tokens + metrics.output_tokens,
            ai_model_used=manifest.ai_model,
            ai_cost_usd=manifest.ai_cost_usd,
            processing_time_ms=manifest.processing_time_ms,
            total_pages=manifest.total_pages,
            total_chunks=manifest.total_chunks,
        )

    def _chunk_rows(self, shell_file_id: uuid.UUID, telemetry: RunTelemetry) -> list[ChunkResultORM]:
        return [
            ChunkResultORM(
                id=chunk_result_id(shell_file_id, chunk.chunk_number),
                shell_file_id=shell_file_id,
                chunk_number=chunk.chunk_number,
                page_start=chunk.start_page,
                page_end=chunk.end_page,
                ai_model_used=chunk.ai_model,
                input_tokens=chunk.input_tokens,
                output_tokens=chunk.output_tokens,
                ai_cost_usd=chunk.cost_usd,
                processing_time_ms=chunk.processing_time_ms,
                drafts_found=chunk.drafts_found,
                drafts_dropped=chunk.drafts_dropped,
                encounters_completed=chunk.encounters_completed,
                encounters_continuing=chunk.encounters_continuing,
                handoff_received=chunk.handoff_received,
                confidence_score=chunk.average_confidence,
            )
            for chunk in telemetry.chunks
        ]
