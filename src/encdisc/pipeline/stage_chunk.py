"""Chunk Scheduler - plan chunks and drive them through the stages in order.

Chunks run strictly sequentially: chunk N+1's extraction needs the handoff
package built from chunk N. All per-run state (temp id generator, reconciler,
telemetry) is created inside ``run`` so independent documents never share it.
"""

from dataclasses import dataclass, field

import structlog

from encdisc.config import Settings
from encdisc.errors import DocumentInputError, ExternalCallError, ReconciliationError, RunFailedError
from encdisc.models import Chunk, Document, ReconciledEncounter, RunTelemetry

from .stage_extract import ChunkExtractor
from .stage_handoff import TempIdGenerator, build_handoff_package
from .stage_reconcile import Reconciler
from .stage_status import infer_statuses

logger = structlog.get_logger(__name__)


def plan_chunks(total_pages: int, chunk_size: int) -> list[Chunk]:
    """Split ``total_pages`` into contiguous chunks of at most ``chunk_size`` pages.

    The chunks cover every page exactly once, in order.

    Raises:
        DocumentInputError: either argument is below 1.
    """
    if total_pages < 1:
        raise DocumentInputError(None, f"Document must have at least one page (got {total_pages})")
    if chunk_size < 1:
        raise DocumentInputError(None, f"Chunk size must be at least 1 (got {chunk_size})")

    total_chunks = -(-total_pages // chunk_size)
    return [
        Chunk(
            chunk_number=index + 1,
            total_chunks=total_chunks,
            start_page=index * chunk_size + 1,
            end_page=min((index + 1) * chunk_size, total_pages),
        )
        for index in range(total_chunks)
    ]


@dataclass
class ScheduleResult:
    """Everything a finished chunk loop hands to the orchestrator."""

    encounters: list[ReconciledEncounter]
    telemetry: RunTelemetry
    total_chunks: int
    review_reasons: list[str] = field(default_factory=list)

    @property
    def requires_manual_review(self) -> bool:
        return bool(self.review_reasons)


class ChunkScheduler:
    """Runs the extract -> status -> handoff -> reconcile loop for one document."""

    def __init__(self, settings: Settings, extractor: ChunkExtractor):
        self.settings = settings
        self.extractor = extractor

    async def run(self, document: Document) -> ScheduleResult:
        """Process every chunk of ``document`` in order.

        Raises:
            RunFailedError: a chunk failed irrecoverably or a chain stayed
                open under the ``fail`` policy. Carries telemetry so far.
        """
        shell_file_id = str(document.shell_file_id)
        chunks = plan_chunks(document.page_count, self.settings.chunk_size)
        reconciler = Reconciler(document.shell_file_id, self.settings.unclosed_chain_policy)
        generator = TempIdGenerator()
        telemetry = RunTelemetry()
        review_reasons: list[str] = []
        handoff = None

        logger.info(
            "run.chunks_planned",
            total_pages=document.page_count,
            total_chunks=len(chunks),
            chunk_size=self.settings.chunk_size,
        )

        for chunk in chunks:
            pages = document.pages_in_range(chunk.start_page, chunk.end_page)
            try:
                result = await self.extractor.extract(chunk, pages, handoff, document.page_count)
            except ExternalCallError as exc:
                logger.error(
                    "run.failed",
                    chunk_number=chunk.chunk_number,
                    chunks_processed=telemetry.chunks_processed,
                    error=str(exc),
                )
                raise RunFailedError(
                    shell_file_id=shell_file_id,
                    chunk_number=chunk.chunk_number,
                    reason=str(exc),
                    telemetry=telemetry,
                ) from exc

            drafts = infer_statuses(result.drafts, chunk)
            handoff, drafts = build_handoff_package(chunk, drafts, pages, generator)
            reconciler.add_chunk(chunk.chunk_number, drafts)

            continuing = sum(1 for d in drafts if d.is_continuing)
            chunk_telemetry = result.telemetry.model_copy(
                update={
                    "encounters_completed": len(drafts) - continuing,
                    "encounters_continuing": continuing,
                }
            )
            telemetry.add(chunk_telemetry)

            confidence = chunk_telemetry.average_confidence
            if confidence is not None and confidence < self.settings.low_confidence_threshold:
                review_reasons.append(f"Chunk {chunk.chunk_number} low confidence: {confidence:.2f}")

            logger.info(
                "chunk.complete",
                chunk_number=chunk.chunk_number,
                total_chunks=chunk.total_chunks,
                drafts=len(drafts),
                continuing=continuing,
                input_tokens=chunk_telemetry.input_tokens,
                output_tokens=chunk_telemetry.output_tokens,
                cost_usd=round(chunk_telemetry.cost_usd, 6),
            )

        try:
            encounters = reconciler.finalize(len(chunks))
        except ReconciliationError as exc:
            logger.error("run.failed", chunk_number=len(chunks), error=str(exc))
            raise RunFailedError(
                shell_file_id=shell_file_id,
                chunk_number=len(chunks),
                reason=str(exc),
                telemetry=telemetry,
            ) from exc

        unclosed = [e.source_temp_id for e in encounters if e.unclosed_chain]
        if unclosed:
            review_reasons.append(f"Unclosed continuation chain(s): {', '.join(unclosed)}")

        return ScheduleResult(
            encounters=encounters,
            telemetry=telemetry,
            total_chunks=len(chunks),
            review_reasons=review_reasons,
        )
