"""Extraction Stage - one inference call per chunk.

Builds the chunk prompt (page text plus any pending encounters handed over
from the previous chunk), calls the inference service through the retry
envelope, and decodes the response into ``DraftEncounter`` objects.

The decode boundary is strict: the response must be a JSON object with an
``encounters`` list, each entry is validated against an explicit schema, and
entries that fail validation are dropped rather than passed downstream.
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from encdisc.config import Settings
from encdisc.errors import MalformedResponseError
from encdisc.models import (
    Chunk,
    ChunkTelemetry,
    DraftEncounter,
    HandoffPackage,
    OCRPage,
    PageRange,
    normalize_page_ranges,
)

from .inference import InferenceClient, InferenceRequest, calculate_cost
from .retry import RetryContext, RetryPolicy, retry_with_backoff

logger = structlog.get_logger(__name__)

MAX_TEXT_FIELD_CHARS = 2000
DEFAULT_CONFIDENCE = 0.5

SYSTEM_PROMPT = (
    "You identify healthcare encounters in OCR text of medical documents. "
    "Respond with a single JSON object: "
    '{"encounters": [{"encounter_id": str, "encounterType": str, '
    '"isRealWorldVisit": bool, "dateRange": {"start": str, "end": str}, '
    '"provider": str, "facility": str, "pageRanges": [[int, int]], '
    '"confidence": float, "summary": str, "diagnoses": [str], "procedures": [str]}]}. '
    "Page numbers are 1-indexed document page numbers."
)


class AIEncounterPayload(BaseModel):
    """Schema for one encounter object as returned by the model.

    Accepts camelCase and snake_case keys. Anything not listed here is ignored;
    in particular the model's own status/temp id fields are never read.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    encounter_type: str = Field(
        ..., min_length=1,
        validation_alias=AliasChoices("encounterType", "encounter_type", "type"),
    )
    page_ranges: list[PageRange] = Field(
        default_factory=list, validation_alias=AliasChoices("pageRanges", "page_ranges")
    )
    confidence: float = Field(default=DEFAULT_CONFIDENCE)
    is_real_world_visit: bool = Field(
        default=False, validation_alias=AliasChoices("isRealWorldVisit", "is_real_world_visit")
    )
    start_date: Optional[str] = Field(
        None, validation_alias=AliasChoices("startDate", "start_date", "encounterStartDate", "encounter_start_date")
    )
    end_date: Optional[str] = Field(
        None, validation_alias=AliasChoices("endDate", "end_date", "encounterEndDate", "encounter_end_date")
    )
    provider: Optional[str] = Field(
        None, validation_alias=AliasChoices("provider", "providerName", "provider_name")
    )
    facility: Optional[str] = Field(
        None, validation_alias=AliasChoices("facility", "facilityName", "facility_name")
    )
    summary: Optional[str] = None
    diagnoses: list[str] = Field(default_factory=list)
    procedures: list[str] = Field(default_factory=list)
    source_id: Optional[str] = Field(
        None, validation_alias=AliasChoices("encounter_id", "encounterId", "tempId", "temp_id", "id")
    )

    @model_validator(mode="before")
    @classmethod
    def _flatten_date_range(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("dateRange"), dict):
            data = dict(data)
            date_range = data.pop("dateRange")
            data.setdefault("startDate", date_range.get("start"))
            data.setdefault("endDate", date_range.get("end"))
        return data

    @field_validator("page_ranges", mode="before")
    @classmethod
    def _coerce_page_ranges(cls, value: Any) -> Any:
        # null or a non-list means "no ranges", not an invalid encounter
        if not isinstance(value, list):
            return []
        return value

    @field_validator("encounter_type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower().replace(" ", "_").replace("-", "_")
        return value

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return DEFAULT_CONFIDENCE
        return min(1.0, max(0.0, number))

    @field_validator("start_date", "end_date", "provider", "facility", "summary", "source_id", mode="before")
    @classmethod
    def _clean_text(cls, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text[:MAX_TEXT_FIELD_CHARS] or None

    @field_validator("diagnoses", "procedures", mode="before")
    @classmethod
    def _clean_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip()[:MAX_TEXT_FIELD_CHARS] for item in value if str(item).strip()]


def _strip_code_fences(content: str) -> str:
    cleaned = content.strip()
    if cleaned.startswith("```"):
        lines = [line for line in cleaned.split("\n") if not line.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def decode_draft_encounters(
    content: str,
    chunk: Chunk,
    total_pages: int,
) -> tuple[list[DraftEncounter], int]:
    """Decode a model response into drafts for ``chunk``.

    Args:
        content: Raw message content from the inference service.
        chunk: Chunk the response belongs to.
        total_pages: Document page count; ranges outside 1..total_pages are dropped.

    Returns:
        Tuple of (drafts, number of dropped entries).

    Raises:
        MalformedResponseError: content is not a JSON object with an
            ``encounters`` list.
    """
    try:
        data = json.loads(_strip_code_fences(content))
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(chunk.chunk_number, f"Response is not valid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise MalformedResponseError(chunk.chunk_number, "Response is not a JSON object")
    entries = data.get("encounters", [])
    if not isinstance(entries, list):
        raise MalformedResponseError(chunk.chunk_number, "'encounters' is not a list")

    drafts: list[DraftEncounter] = []
    dropped = 0
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            dropped += 1
            continue
        try:
            payload = AIEncounterPayload.model_validate(entry)
        except ValidationError as exc:
            dropped += 1
            logger.warning(
                "extract.encounter_rejected",
                chunk_number=chunk.chunk_number,
                index=index,
                errors=exc.error_count(),
            )
            continue

        in_document = [
            PageRange(start=r.start, end=min(r.end, total_pages))
            for r in payload.page_ranges
            if r.start <= total_pages
        ]
        if any(r.end > total_pages for r in payload.page_ranges):
            logger.warning(
                "extract.page_ranges_clipped",
                chunk_number=chunk.chunk_number,
                index=index,
                total_pages=total_pages,
            )

        drafts.append(
            DraftEncounter(
                encounter_type=payload.encounter_type,
                page_ranges=normalize_page_ranges(in_document),
                confidence=payload.confidence,
                is_real_world_visit=payload.is_real_world_visit,
                start_date=payload.start_date,
                end_date=payload.end_date,
                provider=payload.provider,
                facility=payload.facility,
                summary=payload.summary,
                diagnoses=tuple(payload.diagnoses),
                procedures=tuple(payload.procedures),
                source_id=payload.source_id,
                chunk_number=chunk.chunk_number,
                draft_index=index,
            )
        )

    return drafts, dropped


def link_continuations(
    drafts: Sequence[DraftEncounter],
    handoff: Optional[HandoffPackage],
    chunk: Chunk,
    link_by_boundary: bool = True,
) -> list[DraftEncounter]:
    """Mark drafts that continue a pending encounter from the previous chunk.

    A draft is linked when the model echoed the pending temp_id. When exactly
    one encounter is pending and nothing echoed it, the first draft that starts
    on the chunk's first page with the same encounter type is linked instead.
    """
    if handoff is None or handoff.is_empty or chunk.is_single:
        return list(drafts)

    pending_ids = set(handoff.temp_ids)
    used: set[str] = set()
    linked: list[DraftEncounter] = []

    for draft in drafts:
        if draft.source_id in pending_ids and draft.source_id not in used:
            used.add(draft.source_id)
            linked.append(draft.model_copy(update={"continues_from": draft.source_id}))
        else:
            linked.append(draft)

    if link_by_boundary and len(handoff.pending) == 1:
        pending = handoff.pending[0]
        if pending.temp_id and pending.temp_id not in used:
            for position, draft in enumerate(linked):
                if (
                    draft.continues_from is None
                    and draft.first_page == chunk.start_page
                    and draft.encounter_type == pending.encounter_type
                ):
                    linked[position] = draft.model_copy(update={"continues_from": pending.temp_id})
                    logger.info(
                        "extract.linked_by_boundary",
                        chunk_number=chunk.chunk_number,
                        temp_id=pending.temp_id,
                        draft_index=draft.draft_index,
                    )
                    break

    return linked


def format_pages(pages: Sequence[OCRPage]) -> str:
    """Concatenate page text with explicit page markers."""
    return "\n\n".join(
        f"--- PAGE {page.page_number} START ---\n{page.plain_text()}\n--- PAGE {page.page_number} END ---"
        for page in pages
    )


def _position_guidance(chunk: Chunk) -> str:
    if chunk.is_single:
        return "This chunk is the COMPLETE document."
    if chunk.is_first:
        return "This is the FIRST chunk. There is no prior context."
    if chunk.is_last:
        return "This is the FINAL chunk. No later pages exist."
    return "This is a MIDDLE chunk. Encounters may continue from the previous chunk or into the next one."


def format_handoff_context(handoff: HandoffPackage) -> str:
    """Describe pending encounters so the model can recognize continuations."""
    lines = ["## Pending encounters from the previous chunk", ""]
    for pending in handoff.pending:
        partial = pending.partial
        snippet = pending.last_seen_context[-200:]
        lines.extend(
            [
                f"- encounter_id: {pending.temp_id} (reuse this id if the encounter continues here)",
                f"  type: {pending.encounter_type}",
                f"  started on page: {pending.start_page}",
                f"  date: {partial.start_date or 'unknown'}",
                f"  provider: {partial.provider or 'unknown'}",
                f"  facility: {partial.facility or 'unknown'}",
                f"  expected continuation: {pending.expected_continuation or 'unknown'}",
                f'  last seen text: "{snippet}"',
            ]
        )
    return "\n".join(lines)


@dataclass
class ExtractionResult:
    """Drafts and telemetry for one chunk."""

    drafts: list[DraftEncounter]
    telemetry: ChunkTelemetry
    raw_content: str = field(default="", repr=False)


class ChunkExtractor:
    """Runs the inference call for one chunk and decodes its drafts.

    Stateless across calls: everything a chunk needs arrives as arguments, so a
    whole run can be repeated from chunk 1 with identical requests.
    """

    def __init__(
        self,
        settings: Settings,
        client: InferenceClient,
        retry_context: Optional[RetryContext] = None,
        policy: Optional[RetryPolicy] = None,
        **retry_kwargs,
    ):
        """Initialize extractor.

        Args:
            settings: Run configuration.
            client: Inference service client.
            retry_context: Identifiers for retry logging/rescheduling.
            policy: Override the inference retry policy.
            **retry_kwargs: Passed to ``retry_with_backoff`` (``sleep``, ``rng``).
        """
        self.settings = settings
        self.client = client
        self.retry_context = retry_context or RetryContext()
        self.policy = policy or RetryPolicy.for_inference(settings)
        self.retry_kwargs = retry_kwargs

    def build_request(
        self,
        chunk: Chunk,
        pages: Sequence[OCRPage],
        handoff: Optional[HandoffPackage],
        total_pages: int,
    ) -> InferenceRequest:
        """Build the request for a chunk. Deterministic for identical input."""
        sections = [
            "# Chunk information",
            f"- Chunk {chunk.chunk_number} of {chunk.total_chunks}",
            f"- Pages in this chunk: {chunk.start_page} to {chunk.end_page}",
            f"- Total document pages: {total_pages}",
            "",
            _position_guidance(chunk),
        ]
        # Single-chunk documents never carry handoff context
        if handoff is not None and not handoff.is_empty and not chunk.is_single:
            sections.extend(["", format_handoff_context(handoff)])
        sections.extend(["", "# Document text", format_pages(pages)])

        return InferenceRequest(
            chunk_number=chunk.chunk_number,
            system_prompt=SYSTEM_PROMPT,
            user_prompt="\n".join(sections),
            model=self.settings.ai_model,
            max_output_tokens=self.settings.ai_max_output_tokens,
        )

    async def extract(
        self,
        chunk: Chunk,
        pages: Sequence[OCRPage],
        handoff: Optional[HandoffPackage],
        total_pages: int,
    ) -> ExtractionResult:
        """Extract draft encounters for one chunk.

        Raises:
            TerminalExternalError, RetriesExhaustedError, JobRescheduledError:
                from the retry envelope when the call cannot succeed.
        """
        started = time.monotonic()
        if chunk.is_single:
            handoff = None

        text_length = sum(len(p.plain_text()) for p in pages)
        if text_length == 0:
            logger.critical(
                "extract.empty_text",
                chunk_number=chunk.chunk_number,
                start_page=chunk.start_page,
                end_page=chunk.end_page,
            )

        request = self.build_request(chunk, pages, handoff, total_pages)

        # Billed attempts count even when their output fails to decode
        usage = {"input_tokens": 0, "output_tokens": 0}

        async def attempt():
            response = await self.client.complete(request)
            usage["input_tokens"] += response.input_tokens
            usage["output_tokens"] += response.output_tokens
            drafts, dropped = decode_draft_encounters(response.content, chunk, total_pages)
            return response, drafts, dropped

        response, drafts, dropped = await retry_with_backoff(
            attempt, self.policy, self.retry_context, **self.retry_kwargs
        )
        input_tokens, output_tokens = usage["input_tokens"], usage["output_tokens"]

        drafts = link_continuations(drafts, handoff, chunk, self.settings.link_by_boundary)

        confidences = [d.confidence for d in drafts]
        telemetry = ChunkTelemetry(
            chunk_number=chunk.chunk_number,
            start_page=chunk.start_page,
            end_page=chunk.end_page,
            ai_model=response.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=calculate_cost(self.settings, input_tokens, output_tokens),
            processing_time_ms=int((time.monotonic() - started) * 1000),
            drafts_found=len(drafts),
            drafts_dropped=dropped,
            handoff_received=handoff is not None and not handoff.is_empty,
            average_confidence=sum(confidences) / len(confidences) if confidences else None,
        )
        return ExtractionResult(drafts=drafts, telemetry=telemetry, raw_content=response.content)
