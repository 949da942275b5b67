"""Boundary Status Stage - decide complete vs continuing per draft.

Deterministic and model-independent: the AI's own status judgment is never
consulted. An encounter whose last page is the chunk's last page, in any
chunk but the final one, is treated as continuing into the next chunk.

Rules, in order:
1. Single-chunk document: complete, no temp_id, no expected_continuation.
2. No page ranges: complete.
3. Last page == chunk end page and not the last chunk: continuing.
4. Otherwise: complete.
"""

from typing import Optional

import structlog

from encdisc.models import Chunk, DraftEncounter, EncounterStatus

logger = structlog.get_logger(__name__)


# Encounter-type keyword -> section expected in the next chunk.
# First match wins.
EXPECTED_CONTINUATIONS: list[tuple[tuple[str, ...], str]] = [
    (("admission", "inpatient"), "discharge_summary"),
    (("surgery", "surgical", "procedure", "operation"), "post_operative_notes"),
    (("emergency",), "disposition_or_admission"),
    (("consultation", "consult"), "recommendations"),
    (("diagnostic", "imaging", "radiology", "pathology"), "results_or_report"),
]

DEFAULT_CONTINUATION = "continuation"


def infer_expected_continuation(encounter_type: Optional[str]) -> str:
    """Map an encounter type to the section expected after the boundary."""
    lowered = (encounter_type or "").lower()
    for keywords, label in EXPECTED_CONTINUATIONS:
        if any(keyword in lowered for keyword in keywords):
            return label
    return DEFAULT_CONTINUATION


def derive_temp_id(chunk_number: int, draft_index: int) -> str:
    """Temporary chain id, stable across retries of the same chunk."""
    return f"enc_temp_c{chunk_number:03d}_d{draft_index:03d}"


def infer_status(draft: DraftEncounter, chunk: Chunk) -> DraftEncounter:
    """Apply the boundary rules to a single draft.

    Args:
        draft: Decoded draft from this chunk.
        chunk: The chunk that produced it.

    Returns:
        A copy of the draft with status, temp_id and expected_continuation set.
        ``continues_from`` is left untouched.
    """
    complete = {
        "status": EncounterStatus.COMPLETE,
        "temp_id": None,
        "expected_continuation": None,
    }

    if chunk.is_single:
        return draft.model_copy(update=complete)

    if not draft.page_ranges:
        return draft.model_copy(update={"status": EncounterStatus.COMPLETE})

    if draft.last_page == chunk.end_page and not chunk.is_last:
        temp_id = (
            draft.continues_from
            or draft.temp_id
            or derive_temp_id(chunk.chunk_number, draft.draft_index)
        )
        expected = draft.expected_continuation or infer_expected_continuation(
            draft.encounter_type
        )
        logger.debug(
            "status.continuing",
            chunk_number=chunk.chunk_number,
            draft_index=draft.draft_index,
            last_page=draft.last_page,
            chunk_end_page=chunk.end_page,
            temp_id=temp_id,
        )
        return draft.model_copy(
            update={
                "status": EncounterStatus.CONTINUING,
                "temp_id": temp_id,
                "expected_continuation": expected,
            }
        )

    return draft.model_copy(update=complete)


def infer_statuses(drafts: list[DraftEncounter], chunk: Chunk) -> list[DraftEncounter]:
    """Apply ``infer_status`` to every draft of a chunk, preserving order."""
    return [infer_status(draft, chunk) for draft in drafts]
