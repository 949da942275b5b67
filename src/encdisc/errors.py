"""Error taxonomy for the Encounter Discovery Pipeline.

Input errors abort before any chunk runs. External errors are classified as
transient or terminal by the retry envelope. Reconciliation and persistence
errors are run-level. ``RunFailedError`` wraps whatever stopped a run with the
chunk number and the telemetry gathered so far.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional


class ErrorKind(str, Enum):
    """Retry classification for external call failures."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"


class EncounterDiscoveryError(Exception):
    """Base class for all pipeline errors."""


@dataclass(eq=False)
class DocumentInputError(EncounterDiscoveryError):
    """Malformed document, missing pages or page-count mismatch."""

    shell_file_id: Optional[str]
    message: str

    def __str__(self) -> str:
        return f"{self.message} (shell_file_id={self.shell_file_id})"


@dataclass(eq=False)
class ExternalCallError(EncounterDiscoveryError):
    """Failure of a network-bound operation after classification."""

    operation: str
    kind: ErrorKind
    message: str
    status: Optional[int] = None
    attempts: int = 1

    def __str__(self) -> str:
        status = f", status={self.status}" if self.status is not None else ""
        return (
            f"{self.message} (operation={self.operation}, kind={self.kind.value}"
            f"{status}, attempts={self.attempts})"
        )


class TerminalExternalError(ExternalCallError):
    """Non-retryable failure: auth errors, malformed requests."""


class RetriesExhaustedError(ExternalCallError):
    """A transient failure that persisted through every allowed attempt."""


@dataclass(eq=False)
class JobRescheduledError(ExternalCallError):
    """Retries exhausted and the work item was handed back to the job queue."""

    job_id: Optional[str] = None
    delay_seconds: int = 0


@dataclass(eq=False)
class InferenceHTTPError(EncounterDiscoveryError):
    """HTTP-level failure from the AI inference service."""

    status: int
    message: str
    headers: Mapping[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"Inference service returned HTTP {self.status}: {self.message}"


@dataclass(eq=False)
class MalformedResponseError(EncounterDiscoveryError):
    """AI response could not be decoded into draft encounters."""

    chunk_number: int
    message: str

    def __str__(self) -> str:
        return f"{self.message} (chunk={self.chunk_number})"


@dataclass(eq=False)
class ReconciliationError(EncounterDiscoveryError):
    """A continuation chain was still open after the final chunk."""

    temp_ids: list[str]
    message: str = "Continuing encounter(s) never closed"

    def __str__(self) -> str:
        return f"{self.message}: {', '.join(self.temp_ids)}"


@dataclass(eq=False)
class PersistenceError(EncounterDiscoveryError):
    """The atomic manifest commit failed; nothing was written."""

    shell_file_id: str
    message: str

    def __str__(self) -> str:
        return f"{self.message} (shell_file_id={self.shell_file_id})"


@dataclass(eq=False)
class RunFailedError(EncounterDiscoveryError):
    """A document run failed; carries partial telemetry for diagnostics only."""

    shell_file_id: str
    chunk_number: Optional[int]
    reason: str
    telemetry: Optional[Any] = None

    def __str__(self) -> str:
        where = f"chunk {self.chunk_number}" if self.chunk_number else "run"
        return f"Run for {self.shell_file_id} failed at {where}: {self.reason}"
