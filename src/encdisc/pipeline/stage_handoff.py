"""Handoff Stage - carry continuing encounters into the next chunk.

After status inference, every ``continuing`` draft becomes a pending entry in
the handoff package passed to the next chunk's extraction call. Pending
entries with a missing or garbage temp_id or expected_continuation are
repaired before the package is handed on.
"""

from typing import Optional, Sequence

import structlog

from encdisc.models import Chunk, DraftEncounter, HandoffPackage, OCRPage, PendingEncounter

from .stage_status import infer_expected_continuation

logger = structlog.get_logger(__name__)

LAST_CONTEXT_CHARS = 500

_INVALID_TEMP_ID_MARKERS = ("undefined", "null", "none")


class TempIdGenerator:
    """Monotonic temp_id source, scoped to one run."""

    def __init__(self, prefix: str = "enc_temp_gen"):
        self.prefix = prefix
        self._counter = 0

    def next(self) -> str:
        self._counter += 1
        return f"{self.prefix}_{self._counter:04d}"


def _is_valid_temp_id(temp_id: Optional[str]) -> bool:
    if not temp_id or not temp_id.strip():
        return False
    lowered = temp_id.lower()
    return not any(marker in lowered for marker in _INVALID_TEMP_ID_MARKERS)


def last_seen_context(pages: Sequence[OCRPage], limit: int = LAST_CONTEXT_CHARS) -> str:
    """Tail of the last page's text, for continuity in the next prompt."""
    if not pages:
        return ""
    text = pages[-1].plain_text()
    return text[-limit:] if len(text) > limit else text


def repair_pending(pending: PendingEncounter, generator: TempIdGenerator) -> PendingEncounter:
    """Fill in a missing/invalid temp_id and a missing expected_continuation."""
    update = {}
    if not _is_valid_temp_id(pending.temp_id):
        update["temp_id"] = generator.next()
        logger.warning(
            "handoff.temp_id_repaired",
            invalid_temp_id=pending.temp_id,
            temp_id=update["temp_id"],
        )
    if not pending.expected_continuation:
        update["expected_continuation"] = infer_expected_continuation(
            pending.encounter_type or pending.partial.encounter_type
        )
    if not update:
        return pending

    repaired = pending.model_copy(update=update)
    # Keep the partial draft's own link in sync with the repaired id
    if "temp_id" in update:
        repaired.partial = repaired.partial.model_copy(update={"temp_id": update["temp_id"]})
    return repaired


def repair_handoff_package(
    package: Optional[HandoffPackage],
    generator: TempIdGenerator,
) -> Optional[HandoffPackage]:
    """Repair every pending entry of a package; ``None`` passes through."""
    if package is None:
        return None
    return package.model_copy(
        update={"pending": [repair_pending(p, generator) for p in package.pending]}
    )


def build_handoff_package(
    chunk: Chunk,
    drafts: Sequence[DraftEncounter],
    pages: Sequence[OCRPage],
    generator: TempIdGenerator,
) -> tuple[Optional[HandoffPackage], list[DraftEncounter]]:
    """Package this chunk's continuing drafts for the next chunk.

    Args:
        chunk: Chunk that produced the drafts.
        drafts: Drafts after status inference.
        pages: The chunk's pages (for the trailing context snippet).
        generator: Run-scoped temp_id generator for repairs.

    Returns:
        Tuple of (package or None, drafts with repaired temp_ids applied).
        The returned drafts are what the reconciler must see, so chain ids
        match what the next chunk receives.
    """
    if chunk.is_single or chunk.is_last:
        return None, list(drafts)

    context = last_seen_context(pages)
    pending: list[PendingEncounter] = []
    updated: list[DraftEncounter] = []

    for draft in drafts:
        if not draft.is_continuing:
            updated.append(draft)
            continue

        entry = repair_pending(
            PendingEncounter(
                temp_id=draft.temp_id,
                encounter_type=draft.encounter_type,
                expected_continuation=draft.expected_continuation,
                start_page=draft.first_page or chunk.start_page,
                partial=draft,
                last_seen_context=context,
            ),
            generator,
        )
        pending.append(entry)
        updated.append(
            draft.model_copy(
                update={
                    "temp_id": entry.temp_id,
                    "expected_continuation": entry.expected_continuation,
                }
            )
        )

    if not pending:
        return None, updated

    if len(pending) > 1:
        logger.warning(
            "handoff.multiple_continuations",
            chunk_number=chunk.chunk_number,
            temp_ids=[p.temp_id for p in pending],
        )

    return HandoffPackage(from_chunk=chunk.chunk_number, pending=pending), updated
