"""Retry envelope for every network-bound call.

Wraps AI inference, object-store reads and datastore commits with:
- error classification (transient vs terminal)
- full-jitter exponential backoff: ``uniform(0, min(cap, base * 2**attempt))``
- ``Retry-After`` support, which replaces the computed delay when present
- a cap on total attempts, then either a terminal failure or a hand-off to a
  durable job queue so a transient outage does not lose the work item
- one structured log record per retry

Callers must resend identical input on every attempt.
"""

import asyncio
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, TypeVar

import httpx
import structlog
from sqlalchemy import exc as sa_exc

from encdisc.config import Settings
from encdisc.errors import (
    ErrorKind,
    ExternalCallError,
    InferenceHTTPError,
    JobRescheduledError,
    MalformedResponseError,
    RetriesExhaustedError,
    TerminalExternalError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_RETRYABLE_STATUS_CODES = {408, 425, 429}


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for one class of operation."""

    operation: str
    max_retries: int = 3
    base_delay: float = 1.0
    max_backoff: float = 10.0
    max_retry_after: float = 300.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.base_delay < 0 or self.max_backoff < 0:
            raise ValueError("retry delays cannot be negative")

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    @classmethod
    def for_inference(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            operation="ai_inference",
            max_retries=settings.inference_max_retries,
            base_delay=settings.inference_retry_base_seconds,
            max_backoff=settings.inference_retry_cap_seconds,
            max_retry_after=settings.max_retry_after_seconds,
        )

    @classmethod
    def for_storage_read(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            operation="storage_read",
            max_retries=settings.storage_max_retries,
            base_delay=settings.storage_retry_base_seconds,
            max_backoff=settings.storage_retry_cap_seconds,
            max_retry_after=settings.max_retry_after_seconds,
        )

    @classmethod
    def for_datastore_read(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            operation="datastore_read",
            max_retries=settings.datastore_max_retries,
            base_delay=settings.datastore_retry_base_seconds,
            max_backoff=settings.datastore_retry_cap_seconds,
            max_retry_after=settings.max_retry_after_seconds,
        )

    @classmethod
    def for_datastore_write(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            operation="datastore_write",
            max_retries=settings.datastore_max_retries,
            base_delay=settings.datastore_retry_base_seconds,
            max_backoff=settings.datastore_retry_cap_seconds,
            max_retry_after=settings.max_retry_after_seconds,
        )


class JobRescheduler(Protocol):
    """Durable queue that can take a work item back after retries run out."""

    async def reschedule(self, job_id: str, delay_seconds: int, reason: str) -> None:
        ...


@dataclass
class RetryContext:
    """Per-run identifiers for log records and optional job rescheduling."""

    shell_file_id: Optional[str] = None
    correlation_id: Optional[str] = None
    job_id: Optional[str] = None
    rescheduler: Optional[JobRescheduler] = None
    reschedule_delay_seconds: int = 300
    extra: dict[str, Any] = field(default_factory=dict)

    def log_fields(self) -> dict[str, Any]:
        fields = {
            "shell_file_id": self.shell_file_id,
            "correlation_id": self.correlation_id,
            "job_id": self.job_id,
            **self.extra,
        }
        return {k: v for k, v in fields.items() if v is not None}


def error_status(exc: BaseException) -> Optional[int]:
    """HTTP status carried by an exception, if any."""
    if isinstance(exc, InferenceHTTPError):
        return exc.status
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, ExternalCallError):
        return exc.status
    status = getattr(exc, "status_code", None) or getattr(exc, "status", None)
    return status if isinstance(status, int) else None


def _is_retryable_status(status: int) -> bool:
    return status in _RETRYABLE_STATUS_CODES or 500 <= status < 600


def classify_error(exc: BaseException) -> ErrorKind:
    """Decide whether a failure is worth retrying.

    Transient: 408/425/429 and 5xx responses, timeouts, connection failures,
    dropped database connections, undecodable AI output. Everything else,
    including auth failures and other 4xx, is terminal.
    """
    if isinstance(exc, ExternalCallError):
        return exc.kind
    if isinstance(exc, MalformedResponseError):
        return ErrorKind.TRANSIENT

    status = error_status(exc)
    if status is not None:
        return ErrorKind.TRANSIENT if _is_retryable_status(status) else ErrorKind.TERMINAL

    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    if isinstance(exc, sa_exc.IntegrityError):
        return ErrorKind.TERMINAL
    if isinstance(exc, (sa_exc.OperationalError, sa_exc.InterfaceError, sa_exc.TimeoutError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, sa_exc.DBAPIError) and exc.connection_invalidated:
        return ErrorKind.TRANSIENT

    return ErrorKind.TERMINAL


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP date) into seconds."""
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def retry_after_from(exc: BaseException) -> Optional[float]:
    """Extract a Retry-After delay from an exception's response headers."""
    headers: Optional[Mapping[str, str]] = None
    if isinstance(exc, InferenceHTTPError):
        headers = exc.headers
    elif isinstance(exc, httpx.HTTPStatusError):
        headers = exc.response.headers
    else:
        headers = getattr(exc, "headers", None)
    if not headers:
        return None

    for key, value in headers.items():
        if key.lower() == "retry-after":
            return parse_retry_after(value)
    return None


def compute_full_jitter(
    attempt: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """Full-jitter delay for a 0-indexed retry attempt."""
    ceiling = min(policy.max_backoff, policy.base_delay * (2**attempt))
    return (rng or random).uniform(0, ceiling)


def next_delay(
    attempt: int,
    policy: RetryPolicy,
    exc: BaseException,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before the next attempt: Retry-After when present, else jitter."""
    retry_after = retry_after_from(exc)
    if retry_after is not None:
        return min(retry_after, policy.max_retry_after)
    return compute_full_jitter(attempt, policy, rng)


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    context: Optional[RetryContext] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run ``fn`` until it succeeds, fails terminally, or runs out of attempts.

    Args:
        fn: Zero-argument coroutine factory. Called once per attempt.
        policy: Backoff parameters for this operation.
        context: Identifiers for logging and optional job rescheduling.
        sleep: Awaitable sleep, injectable for tests.
        rng: Random source for jitter, injectable for tests.

    Returns:
        Whatever ``fn`` returns on the first successful attempt.

    Raises:
        TerminalExternalError: non-retryable failure (no retry attempted).
        RetriesExhaustedError: transient failure on every attempt.
        JobRescheduledError: attempts exhausted and the job was re-queued.
    """
    context = context or RetryContext()
    log = logger.bind(operation=policy.operation, **context.log_fields())

    for attempt in range(policy.max_attempts):
        try:
            return await fn()
        except Exception as exc:
            kind = classify_error(exc)
            status = error_status(exc)
            record = {
                "attempt": attempt + 1,
                "max_attempts": policy.max_attempts,
                "error_kind": kind.value,
                "error_type": type(exc).__name__,
                "error_status": status,
                "error_message": str(exc),
            }

            if kind is ErrorKind.TERMINAL:
                log.error("retry.terminal", delay_seconds=0, **record)
                raise TerminalExternalError(
                    operation=policy.operation,
                    kind=kind,
                    message=str(exc),
                    status=status,
                    attempts=attempt + 1,
                ) from exc

            if attempt + 1 >= policy.max_attempts:
                await _give_up(exc, policy, context, log, record, status)

            delay = next_delay(attempt, policy, exc, rng)
            log.warning("retry.attempt", delay_seconds=round(delay, 3), **record)
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover


async def _give_up(exc, policy, context, log, record, status) -> None:
    """Raise the right exhaustion error, re-queueing the job when possible."""
    attempts = policy.max_attempts
    message = f"{policy.operation} failed after {attempts} attempt(s): {exc}"

    if context.rescheduler is not None and context.job_id:
        reason = f"{policy.operation} retries exhausted: {exc}"
        try:
            await context.rescheduler.reschedule(
                context.job_id, context.reschedule_delay_seconds, reason
            )
        except Exception as reschedule_exc:
            log.error(
                "retry.reschedule_failed",
                reschedule_error=str(reschedule_exc),
                **record,
            )
        else:
            log.warning(
                "retry.rescheduled",
                delay_seconds=context.reschedule_delay_seconds,
                **record,
            )
            raise JobRescheduledError(
                operation=policy.operation,
                kind=ErrorKind.TRANSIENT,
                message=message,
                status=status,
                attempts=attempts,
                job_id=context.job_id,
                delay_seconds=context.reschedule_delay_seconds,
            ) from exc

    log.error("retry.exhausted", delay_seconds=0, **record)
    raise RetriesExhaustedError(
        operation=policy.operation,
        kind=ErrorKind.TRANSIENT,
        message=message,
        status=status,
        attempts=attempts,
    ) from exc
