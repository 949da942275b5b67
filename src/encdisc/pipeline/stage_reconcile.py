"""Reconciliation Stage - merge continuation chains into final encounters.

Drafts arrive chunk by chunk. A draft whose ``continues_from`` names a pending
chain is merged into it; a chain is finalized when its latest fragment is
``complete``. Each chain yields exactly one ``ReconciledEncounter`` with an
identifier derived from the shell file and the chain key, so re-running the
same document produces the same ids.

Merging is a left fold over ``merge_pair``, which is associative: the result
does not depend on how fragments are grouped.
"""

import functools
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Literal, Mapping, Optional, Sequence, Union

import structlog

from encdisc.errors import ReconciliationError
from encdisc.models import (
    DraftEncounter,
    ProcessingMetrics,
    ReconciledEncounter,
    RunManifest,
    RunTelemetry,
    is_planned_type,
    is_pseudo_type,
    normalize_page_ranges,
)

logger = structlog.get_logger(__name__)

ENCOUNTER_NAMESPACE = uuid.UUID("6f1c3a52-8d0e-5b7a-9c4e-2a7d15e0b9f3")

GENERIC_ENCOUNTER_TYPES = frozenset({"unknown", "other", "encounter", ""})

UnclosedChainPolicy = Literal["flag", "fail"]


def stable_encounter_id(shell_file_id: Union[uuid.UUID, str], chain_key: str) -> uuid.UUID:
    """Deterministic encounter id for one chain of one shell file."""
    return uuid.uuid5(ENCOUNTER_NAMESPACE, f"{shell_file_id}:{chain_key}")


def _type_category(encounter_type: str) -> int:
    if is_planned_type(encounter_type):
        return 1
    if is_pseudo_type(encounter_type):
        return 0
    return 2


def _base_type(encounter_type: str) -> str:
    for prefix in ("planned_", "pseudo_"):
        if encounter_type.startswith(prefix):
            return encounter_type[len(prefix):]
    return encounter_type


def type_specificity(encounter_type: str) -> tuple[int, int, int]:
    """Sort key; a higher key is the more specific encounter type."""
    generic = _base_type(encounter_type) in GENERIC_ENCOUNTER_TYPES
    tokens = len([t for t in encounter_type.split("_") if t])
    return (0 if generic else 1, _type_category(encounter_type), tokens)


def _date_key(value: str) -> tuple[int, str]:
    # Parsable ISO dates sort chronologically; anything else sorts after them
    try:
        return (0, date.fromisoformat(value[:10]).isoformat())
    except ValueError:
        return (1, value)


def _earliest(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if not a or not b:
        return a or b
    return b if _date_key(b) < _date_key(a) else a


def _latest(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if not a or not b:
        return a or b
    return b if _date_key(b) > _date_key(a) else a


def _ordered_union(a: Sequence[str], b: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys([*a, *b]))


def merge_pair(a: DraftEncounter, b: DraftEncounter) -> DraftEncounter:
    """Merge two fragments of one chain; ``a`` precedes ``b`` in document order.

    Pipeline-owned fields (chunk_number, draft_index, temp ids) come from
    ``a``; status comes from ``b``.
    """
    encounter_type = b.encounter_type if type_specificity(b.encounter_type) > type_specificity(a.encounter_type) else a.encounter_type
    return a.model_copy(
        update={
            "encounter_type": encounter_type,
            "page_ranges": normalize_page_ranges([*a.page_ranges, *b.page_ranges]),
            "confidence": max(a.confidence, b.confidence),
            "is_real_world_visit": a.is_real_world_visit or b.is_real_world_visit,
            "start_date": _earliest(a.start_date, b.start_date),
            "end_date": _latest(a.end_date, b.end_date),
            "provider": a.provider or b.provider,
            "facility": a.facility or b.facility,
            "summary": b.summary or a.summary,
            "diagnoses": _ordered_union(a.diagnoses, b.diagnoses),
            "procedures": _ordered_union(a.procedures, b.procedures),
            "status": b.status,
        }
    )


def merge_fragments(fragments: Sequence[DraftEncounter]) -> DraftEncounter:
    """Fold a chain's fragments, in chunk order, into one draft."""
    if not fragments:
        raise ValueError("cannot merge an empty chain")
    return functools.reduce(merge_pair, fragments)


@dataclass
class _Chain:
    key: str
    order: int
    fragments: list[DraftEncounter] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)


class Reconciler:
    """Accumulates drafts chunk by chunk and emits reconciled encounters.

    One instance per run. Chunks must be added in strictly increasing order.
    """

    def __init__(
        self,
        shell_file_id: Union[uuid.UUID, str],
        unclosed_chain_policy: UnclosedChainPolicy = "flag",
    ):
        if unclosed_chain_policy not in ("flag", "fail"):
            raise ValueError(f"Unknown unclosed chain policy: {unclosed_chain_policy}")
        self.shell_file_id = shell_file_id
        self.unclosed_chain_policy = unclosed_chain_policy
        self._pending: dict[str, _Chain] = {}
        self._finished: list[tuple[int, ReconciledEncounter]] = []
        self._last_chunk = 0
        self._sequence = 0

    @property
    def pending_temp_ids(self) -> list[str]:
        return list(self._pending)

    @property
    def last_chunk(self) -> int:
        return self._last_chunk

    def _new_chain(self, key: str) -> _Chain:
        self._sequence += 1
        return _Chain(key=key, order=self._sequence)

    def add_chunk(self, chunk_number: int, drafts: Sequence[DraftEncounter]) -> None:
        """Fold one chunk's status-inferred drafts into the chain state."""
        if chunk_number <= self._last_chunk:
            raise ValueError(
                f"Chunks must be added in increasing order (got {chunk_number} after {self._last_chunk})"
            )
        self._last_chunk = chunk_number

        still_pending: dict[str, _Chain] = {}
        for draft in drafts:
            if draft.continues_from and draft.continues_from in self._pending:
                chain = self._pending.pop(draft.continues_from)
            elif draft.continues_from:
                chain = self._new_chain(draft.continues_from)
                chain.diagnostics.append(
                    f"chunk {chunk_number} continued unknown chain {draft.continues_from}"
                )
                logger.warning(
                    "reconcile.unknown_chain",
                    chunk_number=chunk_number,
                    temp_id=draft.continues_from,
                )
            else:
                chain = self._new_chain(draft.temp_id or f"c{chunk_number}:d{draft.draft_index}")

            chain.fragments.append(draft)

            if draft.is_continuing:
                still_pending[draft.temp_id or chain.key] = chain
            else:
                self._finish(chain)

        # Chains not picked up by this chunk stay open
        self._pending.update(still_pending)

    def _finish(self, chain: _Chain, unclosed: bool = False) -> ReconciledEncounter:
        merged = merge_fragments(chain.fragments)
        page_ranges = list(merged.page_ranges)
        encounter = ReconciledEncounter(
            encounter_id=stable_encounter_id(self.shell_file_id, chain.key),
            encounter_type=merged.encounter_type,
            is_real_world_visit=merged.is_real_world_visit,
            start_date=merged.start_date,
            end_date=merged.end_date,
            provider=merged.provider,
            facility=merged.facility,
            summary=merged.summary,
            diagnoses=list(merged.diagnoses),
            procedures=list(merged.procedures),
            page_ranges=page_ranges,
            confidence=merged.confidence,
            is_multi_segment=len(page_ranges) > 1,
            source_chunks=sorted({f.chunk_number for f in chain.fragments}),
            source_temp_id=chain.key if len(chain.fragments) > 1 or unclosed else None,
            unclosed_chain=unclosed,
            diagnostics=list(chain.diagnostics),
        )
        self._finished.append((chain.order, encounter))
        return encounter

    def finalize(self, total_chunks: int) -> list[ReconciledEncounter]:
        """Close the run and return every encounter in order of first appearance.

        Raises:
            ReconciliationError: chains are still open and the policy is ``fail``.
        """
        if self._last_chunk != total_chunks:
            raise ValueError(
                f"finalize({total_chunks}) called after chunk {self._last_chunk}"
            )

        if self._pending:
            open_ids = list(self._pending)
            if self.unclosed_chain_policy == "fail":
                raise ReconciliationError(temp_ids=open_ids)
            for temp_id, chain in self._pending.items():
                chain.diagnostics.append(
                    f"continuation chain {temp_id} still open after final chunk {total_chunks}"
                )
                self._finish(chain, unclosed=True)
            logger.warning(
                "reconcile.unclosed_chains",
                temp_ids=open_ids,
                total_chunks=total_chunks,
            )
            self._pending = {}

        return [encounter for _, encounter in sorted(self._finished, key=lambda item: item[0])]


def reconcile(
    drafts_by_chunk: Mapping[int, Sequence[DraftEncounter]],
    shell_file_id: Union[uuid.UUID, str],
    total_chunks: Optional[int] = None,
    unclosed_chain_policy: UnclosedChainPolicy = "flag",
) -> list[ReconciledEncounter]:
    """Reconcile a whole run at once. Chunks are processed in ascending order."""
    reconciler = Reconciler(shell_file_id, unclosed_chain_policy)
    for chunk_number in sorted(drafts_by_chunk):
        reconciler.add_chunk(chunk_number, drafts_by_chunk[chunk_number])
    return reconciler.finalize(total_chunks or reconciler.last_chunk)


def compute_processing_metrics(
    manifest: RunManifest,
    telemetry: Optional[RunTelemetry] = None,
) -> ProcessingMetrics:
    """Derive encounter counts and averages from a finished manifest."""
    encounters = manifest.encounters
    planned = sum(1 for e in encounters if e.is_planned)
    pseudo = sum(1 for e in encounters if e.is_pseudo)
    real_world = sum(
        1 for e in encounters
        if e.is_real_world_visit and not e.is_planned and not e.is_pseudo
    )
    average = sum(e.confidence for e in encounters) / len(encounters) if encounters else 0.0

    return ProcessingMetrics(
        encounters_detected=len(encounters),
        real_world_count=real_world,
        planned_count=planned,
        pseudo_count=pseudo,
        input_tokens=telemetry.input_tokens if telemetry else 0,
        output_tokens=telemetry.output_tokens if telemetry else 0,
        average_confidence=average,
        encounter_types=sorted({e.encounter_type for e in encounters}),
    )
