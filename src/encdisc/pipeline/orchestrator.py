"""Run orchestration for one shell file.

Validates the document, short-circuits when a manifest already exists,
drives the chunk loop, builds the manifest and metrics, and hands both to the
atomic writer. Nothing is written to the datastore before that single commit.
"""

import time
from collections import Counter
from typing import Optional, Union

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog.contextvars import bound_contextvars

from encdisc.config import Settings
from encdisc.errors import DocumentInputError, JobRescheduledError, PersistenceError, RunFailedError
from encdisc.models import Document, ProcessingStatus, RunManifest, RunResult
from encdisc.storage import AtomicManifestWriter, ManifestRepository, ShellFileRepository
from encdisc.storage.repositories import JobQueueRescheduler

from .inference import InferenceClient
from .retry import RetryContext, RetryPolicy, retry_with_backoff
from .stage_chunk import ChunkScheduler
from .stage_extract import ChunkExtractor
from .stage_reconcile import compute_processing_metrics

logger = structlog.get_logger(__name__)


def validate_document(document: Document, expected_page_count: Optional[int] = None) -> None:
    """Reject documents that cannot be chunked safely.

    Raises:
        DocumentInputError: no pages, duplicate or missing page numbers, or a
            page count that disagrees with the shell file record.
    """
    shell_file_id = str(document.shell_file_id)
    if not document.pages:
        raise DocumentInputError(shell_file_id, "Document has no pages")

    duplicates = sorted(n for n, count in Counter(p.page_number for p in document.pages).items() if count > 1)
    if duplicates:
        raise DocumentInputError(shell_file_id, f"Duplicate page numbers: {duplicates}")

    missing = document.missing_pages()
    if missing:
        raise DocumentInputError(shell_file_id, f"Missing pages: {missing}")

    if expected_page_count is not None and expected_page_count != document.page_count:
        raise DocumentInputError(
            shell_file_id,
            f"Page count mismatch: shell file has {expected_page_count}, OCR has {document.page_count}",
        )


class EncounterDiscoveryRunner:
    """Runs encounter discovery for shell files against one datastore.

    Holds only shared, read-mostly collaborators (settings, session factory,
    inference client). Per-run state is created inside ``run``.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        inference_client: InferenceClient,
        **retry_kwargs,
    ):
        """Initialize runner.

        Args:
            settings: Run configuration.
            session_factory: Async session factory for the datastore.
            inference_client: Client used for every chunk's extraction call.
            **retry_kwargs: Passed to the retry envelope (``sleep``, ``rng``).
        """
        self.settings = settings
        self.session_factory = session_factory
        self.inference_client = inference_client
        self.retry_kwargs = retry_kwargs

    async def run(
        self,
        document: Document,
        force: bool = False,
        job_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> RunResult:
        """Process one document end to end.

        Args:
            document: OCR'd shell file.
            force: Reprocess even when a manifest already exists.
            job_id: Job queue id; enables rescheduling when retries run out.
            correlation_id: Carried into every retry log record.

        Raises:
            ExternalCallError: the datastore could not be read before the run.
            DocumentInputError: the document failed validation.
            RunFailedError: a chunk failed irrecoverably.
            PersistenceError: the final commit failed.
        """
        with bound_contextvars(shell_file_id=str(document.shell_file_id)):
            return await self._run(document, force, job_id, correlation_id)

    async def _run(self, document, force, job_id, correlation_id) -> RunResult:
        started = time.monotonic()

        existing, metrics, expected_pages = await retry_with_backoff(
            lambda: self._load_prior_state(document, force),
            RetryPolicy.for_datastore_read(self.settings),
            RetryContext(shell_file_id=str(document.shell_file_id), correlation_id=correlation_id),
            **self.retry_kwargs,
        )
        if existing is not None:
            logger.info("run.already_processed", encounters=existing.total_encounters_found)
            return RunResult(
                shell_file_id=document.shell_file_id,
                manifest=existing,
                metrics=metrics,
                already_processed=True,
            )

        validate_document(document, expected_pages)
        logger.info("run.started", total_pages=document.page_count, force=force)

        retry_context = RetryContext(
            shell_file_id=str(document.shell_file_id),
            correlation_id=correlation_id,
            job_id=job_id,
            rescheduler=JobQueueRescheduler(self.session_factory) if job_id else None,
            reschedule_delay_seconds=self.settings.reschedule_delay_seconds,
        )
        extractor = ChunkExtractor(self.settings, self.inference_client, retry_context, **self.retry_kwargs)
        scheduler = ChunkScheduler(self.settings, extractor)

        try:
            result = await scheduler.run(document)
        except RunFailedError as exc:
            rescheduled = isinstance(exc.__cause__, JobRescheduledError)
            await self._record_failure(document, exc, rescheduled)
            raise

        manifest = RunManifest(
            shell_file_id=document.shell_file_id,
            patient_id=document.patient_id,
            total_pages=document.page_count,
            total_chunks=result.total_chunks,
            ocr_average_confidence=document.ocr_average_confidence,
            ai_model=result.telemetry.ai_model or self.settings.ai_model,
            ai_cost_usd=result.telemetry.cost_usd,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            pipeline_version=self.settings.pipeline_version,
            encounters=result.encounters,
            requires_manual_review=result.requires_manual_review,
            review_reasons=result.review_reasons,
        )
        metrics = compute_processing_metrics(manifest, result.telemetry)

        writer = AtomicManifestWriter(self.session_factory, self.settings, retry_context, **self.retry_kwargs)
        try:
            await writer.write_run(manifest, metrics, result.telemetry)
        except PersistenceError as exc:
            rescheduled = isinstance(exc.__cause__, JobRescheduledError)
            await self._record_failure(document, exc, rescheduled)
            raise

        logger.info(
            "run.complete",
            encounters=manifest.total_encounters_found,
            total_chunks=manifest.total_chunks,
            cost_usd=round(manifest.ai_cost_usd, 6),
            requires_manual_review=manifest.requires_manual_review,
        )
        return RunResult(shell_file_id=document.shell_file_id, manifest=manifest, metrics=metrics)

    async def _load_prior_state(self, document: Document, force: bool):
        """Stored manifest and metrics (unless forced) plus the recorded page count."""
        async with self.session_factory() as session:
            existing = metrics = None
            if not force:
                manifests = ManifestRepository(session)
                existing = await manifests.load_manifest(document.shell_file_id)
                if existing is not None:
                    metrics = await manifests.load_metrics(document.shell_file_id)
            expected_pages = await ShellFileRepository(session).get_page_count(document.shell_file_id)
        return existing, metrics, expected_pages

    async def _record_failure(
        self,
        document: Document,
        error: Union[RunFailedError, PersistenceError],
        rescheduled: bool,
    ) -> None:
        """Mark the shell file failed (or pending again when the job was re-queued)."""
        status = ProcessingStatus.PENDING if rescheduled else ProcessingStatus.FAILED
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    shell_files = ShellFileRepository(session)
                    await shell_files.get_or_create(document.shell_file_id, document.patient_id, document.page_count)
                    await shell_files.update_status(document.shell_file_id, status, error=str(error))
        except SQLAlchemyError as exc:
            # Logged only; the caller re-raises the run error
            logger.error("run.status_record_failed", status=status.value, error=str(exc))
            return
        logger.warning("run.status_recorded", status=status.value, error_type=type(error).__name__)

