"""Repository layer for database reads and small updates.

Run output is written only by ``AtomicManifestWriter``; the repositories here
cover lookups, shell file status and the job queue.
"""

import random
from datetime import timedelta
from typing import Any, Optional, Sequence
from uuid import UUID, uuid4

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from encdisc.models import ProcessingMetrics, ProcessingStatus, RunManifest, utcnow

from .orm_models import (
    EncounterMetricsORM,
    EncounterORM,
    JobORM,
    ManifestORM,
    ShellFileORM,
)

logger = structlog.get_logger(__name__)


class ShellFileRepository:
    """Repository for ShellFile operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, shell_file_id: UUID) -> Optional[ShellFileORM]:
        """Get shell file by ID."""
        return await self.session.get(ShellFileORM, shell_file_id)

    async def get_or_create(
        self,
        shell_file_id: UUID,
        patient_id: UUID,
        page_count: Optional[int] = None,
        filename: Optional[str] = None,
    ) -> ShellFileORM:
        """Return the shell file row, creating it when absent."""
        shell_file = await self.get_by_id(shell_file_id)
        if shell_file is None:
            shell_file = ShellFileORM(
                id=shell_file_id,
                patient_id=patient_id,
                page_count=page_count,
                filename=filename,
                status=ProcessingStatus.PENDING,
            )
            self.session.add(shell_file)
            await self.session.flush()
        return shell_file

    async def get_page_count(self, shell_file_id: UUID) -> Optional[int]:
        """Page count recorded at upload, if any."""
        result = await self.session.execute(
            select(ShellFileORM.page_count).where(ShellFileORM.id == shell_file_id)
        )
        return result.scalar_one_or_none()

    async def update_status(
        self,
        shell_file_id: UUID,
        status: ProcessingStatus,
        error: Optional[str] = None,
    ) -> None:
        """Update shell file processing status."""
        shell_file = await self.get_by_id(shell_file_id)
        if shell_file:
            shell_file.status = status
            shell_file.error_message = error
            await self.session.flush()

    async def list_needing_review(self, limit: int = 100) -> Sequence[ShellFileORM]:
        """Get shell files flagged for manual review."""
        result = await self.session.execute(
            select(ShellFileORM)
            .where(ShellFileORM.requires_manual_review.is_(True))
            .order_by(ShellFileORM.created_at)
            .limit(limit)
        )
        return result.scalars().all()


class ManifestRepository:
    """Repository for manifest and metrics lookups."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_shell_file(self, shell_file_id: UUID) -> Optional[ManifestORM]:
        return await self.session.get(ManifestORM, shell_file_id)

    async def exists(self, shell_file_id: UUID) -> bool:
        result = await self.session.execute(
            select(func.count())
            .select_from(ManifestORM)
            .where(ManifestORM.shell_file_id == shell_file_id)
        )
        return result.scalar_one() > 0

    async def load_manifest(self, shell_file_id: UUID) -> Optional[RunManifest]:
        """Rebuild the stored ``RunManifest`` from its JSON snapshot."""
        row = await self.get_by_shell_file(shell_file_id)
        if row is None:
            return None
        return RunManifest.model_validate(row.manifest_data)

    async def load_metrics(self, shell_file_id: UUID) -> Optional[ProcessingMetrics]:
        row = await self.session.get(EncounterMetricsORM, shell_file_id)
        if row is None:
            return None
        return ProcessingMetrics(
            encounters_detected=row.encounters_detected,
            real_world_count=row.real_world_encounters,
            planned_count=row.planned_encounters,
            pseudo_count=row.pseudo_encounters,
            input_tokens=row.input_tokens,
            output_tokens=row.output_tokens,
            average_confidence=row.encounter_confidence_average,
            encounter_types=list(row.encounter_types_found or []),
        )


class EncounterRepository:
    """Repository for reconciled encounter reads."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, encounter_id: UUID) -> Optional[EncounterORM]:
        return await self.session.get(EncounterORM, encounter_id)

    async def list_by_shell_file(self, shell_file_id: UUID) -> Sequence[EncounterORM]:
        """Get all encounters for a shell file in document order."""
        result = await self.session.execute(
            select(EncounterORM)
            .where(EncounterORM.shell_file_id == shell_file_id)
            .order_by(EncounterORM.created_at, EncounterORM.id)
        )
        rows = result.scalars().all()
        return sorted(rows, key=lambda r: (r.page_ranges[0][0] if r.page_ranges else 0))

    async def count_by_shell_file(self, shell_file_id: UUID) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(EncounterORM)
            .where(EncounterORM.shell_file_id == shell_file_id)
        )
        return result.scalar_one()


class JobRepository:
    """Repository for the durable job queue."""

    def __init__(self, session: AsyncSession, jitter_ratio: float = 0.1):
        self.session = session
        self.jitter_ratio = jitter_ratio

    async def enqueue(
        self,
        job_type: str,
        shell_file_id: Optional[UUID] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> JobORM:
        """Add a pending job, runnable immediately."""
        job = JobORM(
            id=uuid4(),
            job_type=job_type,
            shell_file_id=shell_file_id,
            status="pending",
            payload=payload or {},
            attempts=0,
            scheduled_at=utcnow(),
        )
        self.session.add(job)
        await self.session.flush()
        return job

    async def get_by_id(self, job_id: UUID) -> Optional[JobORM]:
        return await self.session.get(JobORM, job_id)

    async def reschedule(self, job_id: str, delay_seconds: int, reason: str) -> JobORM:
        """Put a job back to pending, runnable after ``delay_seconds`` plus jitter.

        Raises:
            LookupError: no such job.
        """
        job = await self.get_by_id(UUID(str(job_id)))
        if job is None:
            raise LookupError(f"Job not found: {job_id}")

        jitter = random.uniform(0, delay_seconds * self.jitter_ratio)
        job.status = "pending"
        job.attempts += 1
        job.last_error = reason
        job.scheduled_at = utcnow() + timedelta(seconds=delay_seconds + jitter)
        await self.session.flush()

        logger.info(
            "job.rescheduled",
            job_id=str(job_id),
            delay_seconds=round(delay_seconds + jitter, 1),
            attempts=job.attempts,
        )
        return job


class JobQueueRescheduler:
    """Rescheduler for the retry envelope; commits in its own session."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def reschedule(self, job_id: str, delay_seconds: int, reason: str) -> None:
        async with self.session_factory() as session:
            async with session.begin():
                await JobRepository(session).reschedule(job_id, delay_seconds, reason)
