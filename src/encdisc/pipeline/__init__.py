"""Pipeline stages for progressive encounter discovery.

Per chunk, in order:
1. stage_extract - AI inference call and strict response decoding
2. stage_status - deterministic complete/continuing decision
3. stage_handoff - carry continuing encounters into the next chunk
After the last chunk:
4. stage_reconcile - merge continuation chains, compute metrics

stage_chunk plans chunks and drives the loop. Every network call goes
through the retry envelope in ``retry``. Run orchestration (idempotency,
manifest, commit) lives in ``encdisc.pipeline.orchestrator``.
"""

from .inference import HttpInferenceClient, InferenceClient, InferenceRequest, InferenceResponse
from .page_source import HttpPageSource, JsonFilePageSource, PageSource, parse_ocr_payload
from .retry import (
    JobRescheduler,
    RetryContext,
    RetryPolicy,
    classify_error,
    compute_full_jitter,
    parse_retry_after,
    retry_with_backoff,
)
from .stage_chunk import ChunkScheduler, ScheduleResult, plan_chunks
from .stage_extract import ChunkExtractor, ExtractionResult, decode_draft_encounters
from .stage_handoff import TempIdGenerator, build_handoff_package, repair_handoff_package
from .stage_reconcile import (
    Reconciler,
    compute_processing_metrics,
    merge_fragments,
    merge_pair,
    reconcile,
)
from .stage_status import derive_temp_id, infer_expected_continuation, infer_status

__all__ = [
    # Inference
    "HttpInferenceClient",
    "InferenceClient",
    "InferenceRequest",
    "InferenceResponse",
    # Page sources
    "PageSource",
    "JsonFilePageSource",
    "HttpPageSource",
    "parse_ocr_payload",
    # Retry
    "JobRescheduler",
    "RetryContext",
    "RetryPolicy",
    "classify_error",
    "compute_full_jitter",
    "parse_retry_after",
    "retry_with_backoff",
    # Chunking
    "ChunkScheduler",
    "ScheduleResult",
    "plan_chunks",
    # Extraction
    "ChunkExtractor",
    "ExtractionResult",
    "decode_draft_encounters",
    # Status
    "derive_temp_id",
    "infer_expected_continuation",
    "infer_status",
    # Handoff
    "TempIdGenerator",
    "build_handoff_package",
    "repair_handoff_package",
    # Reconciliation
    "Reconciler",
    "compute_processing_metrics",
    "merge_fragments",
    "merge_pair",
    "reconcile",
]
