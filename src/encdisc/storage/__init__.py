"""Storage layer for the Encounter Discovery Pipeline.

Provides database access via SQLAlchemy (asyncpg on PostgreSQL, aiosqlite in
tests). Run output is committed only through ``AtomicManifestWriter``.
"""

from .database import (
    Base,
    close_db,
    create_engine,
    create_session_factory,
    get_session,
    init_db,
)
from .orm_models import (
    ChunkResultORM,
    EncounterMetricsORM,
    EncounterORM,
    JobORM,
    ManifestORM,
    ShellFileORM,
)
from .repositories import (
    EncounterRepository,
    JobQueueRescheduler,
    JobRepository,
    ManifestRepository,
    ShellFileRepository,
)
from .writer import AtomicManifestWriter

__all__ = [
    # Database
    "Base",
    "create_engine",
    "create_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # ORM Models
    "ShellFileORM",
    "ManifestORM",
    "EncounterMetricsORM",
    "EncounterORM",
    "ChunkResultORM",
    "JobORM",
    # Repositories
    "ShellFileRepository",
    "ManifestRepository",
    "EncounterRepository",
    "JobRepository",
    "JobQueueRescheduler",
    # Writer
    "AtomicManifestWriter",
]
