"""Base models and common types for the Encounter Discovery Pipeline."""

from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class ProcessingStatus(str, Enum):
    """Status of a shell file moving through encounter discovery."""

    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class EncounterStatus(str, Enum):
    """Boundary status of a draft encounter within its chunk."""

    COMPLETE = "complete"
    CONTINUING = "continuing"

