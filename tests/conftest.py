"""Pytest configuration and fixtures."""

import json
from typing import Callable, Optional, Union
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from encdisc.config import Settings
from encdisc.models import Chunk, Document, DraftEncounter, OCRPage, PageRange
from encdisc.pipeline.inference import InferenceRequest, InferenceResponse
from encdisc.storage import close_db, create_engine, create_session_factory, init_db


class FakeInferenceClient:
    """Inference client driven by a handler: request -> content str, or raise."""

    def __init__(
        self,
        handler: Callable[[InferenceRequest], Union[str, dict]],
        input_tokens: int = 1000,
        output_tokens: int = 200,
    ):
        self.handler = handler
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.requests: list[InferenceRequest] = []

    async def complete(self, request: InferenceRequest) -> InferenceResponse:
        self.requests.append(request)
        content = self.handler(request)
        if isinstance(content, dict):
            content = json.dumps(content)
        return InferenceResponse(
            content=content,
            model="fake-model",
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
        )


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def ai_encounter(
    encounter_type: str,
    page_ranges: list[list[int]],
    confidence: float = 0.9,
    encounter_id: Optional[str] = None,
    **extra,
) -> dict:
    """One encounter object in the shape the model returns."""
    item = {
        "encounterType": encounter_type,
        "pageRanges": page_ranges,
        "confidence": confidence,
        "isRealWorldVisit": extra.pop("is_real_world_visit", True),
    }
    if encounter_id is not None:
        item["encounter_id"] = encounter_id
    item.update(extra)
    return item


def scripted_handler(responses_by_chunk: dict[int, list[dict]]):
    """Handler answering each chunk with a fixed encounter list."""

    def handler(request: InferenceRequest) -> dict:
        return {"encounters": responses_by_chunk.get(request.chunk_number, [])}

    return handler


@pytest.fixture
def settings():
    """Settings isolated from the environment, backed by in-memory SQLite."""
    return Settings(
        _env_file=None,
        database_url_override="sqlite+aiosqlite://",
        ai_api_key="test-key",
        ai_base_url="https://inference.test/v1",
        chunk_size=50,
        log_json=False,
    )


@pytest_asyncio.fixture
async def engine(settings):
    """In-memory async engine shared across sessions via StaticPool."""
    engine = create_engine(
        settings,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


@pytest.fixture
def make_document():
    """Factory for documents with ``n`` text pages."""

    def _make(
        page_count: int,
        shell_file_id: Optional[UUID] = None,
        patient_id: Optional[UUID] = None,
        confidence: float = 0.95,
    ) -> Document:
        return Document(
            shell_file_id=shell_file_id or uuid4(),
            patient_id=patient_id or uuid4(),
            pages=[
                OCRPage(page_number=n, text=f"Clinical note page {n}", confidence=confidence)
                for n in range(1, page_count + 1)
            ],
        )

    return _make


@pytest.fixture
def make_draft():
    """Factory for draft encounters with sensible defaults."""

    def _make(
        page_ranges=((1, 2),),
        encounter_type: str = "outpatient_visit",
        chunk_number: int = 1,
        draft_index: int = 0,
        confidence: float = 0.9,
        **fields,
    ) -> DraftEncounter:
        return DraftEncounter(
            encounter_type=encounter_type,
            page_ranges=tuple(PageRange(start=s, end=e) for s, e in page_ranges),
            confidence=confidence,
            chunk_number=chunk_number,
            draft_index=draft_index,
            **fields,
        )

    return _make


@pytest.fixture
def make_chunk():
    def _make(chunk_number: int, total_chunks: int, start_page: int, end_page: int) -> Chunk:
        return Chunk(
            chunk_number=chunk_number,
            total_chunks=total_chunks,
            start_page=start_page,
            end_page=end_page,
        )

    return _make
