"""Tests for OCR page sources."""

import json
import uuid

import httpx
import pytest

from encdisc.errors import DocumentInputError, RetriesExhaustedError
from encdisc.pipeline.page_source import HttpPageSource, JsonFilePageSource, parse_ocr_payload


@pytest.fixture
def ids():
    return str(uuid.uuid4()), str(uuid.uuid4())


def native_payload(shell_file_id, patient_id, page_count=3):
    return {
        "shell_file_id": shell_file_id,
        "patient_id": patient_id,
        "pages": [
            {
                "page_number": n,
                "confidence": 0.9,
                "lines": [
                    {"text": "second", "reading_order": 1},
                    {"text": f"first {n}", "reading_order": 0},
                ],
            }
            for n in range(page_count, 0, -1)
        ],
    }


class TestParseOcrPayload:
    """Tests for payload shape handling."""

    def test_native_shape(self, ids):
        document = parse_ocr_payload(native_payload(*ids))

        assert [p.page_number for p in document.pages] == [1, 2, 3]
        assert document.pages[0].plain_text() == "first 1 second"
        assert str(document.shell_file_id) == ids[0]

    def test_vision_shape(self, ids):
        data = {
            "fullTextAnnotation": {
                "pages": [{"text": "page one", "confidence": 0.8}, {"text": "page two", "confidence": 0.6}]
            }
        }

        document = parse_ocr_payload(data, *ids)

        assert [p.page_number for p in document.pages] == [1, 2]
        assert document.ocr_average_confidence == pytest.approx(0.7)

    def test_explicit_ids_win(self, ids):
        other = str(uuid.uuid4())

        document = parse_ocr_payload(native_payload(*ids), shell_file_id=other)

        assert str(document.shell_file_id) == other

    @pytest.mark.parametrize(
        "data",
        [
            [],
            {"pages": []},
            {"shell_file_id": str(uuid.uuid4()), "patient_id": str(uuid.uuid4())},
            {"shell_file_id": str(uuid.uuid4()), "patient_id": str(uuid.uuid4()), "pages": [{"page_number": 0}]},
        ],
    )
    def test_invalid_payloads(self, data):
        with pytest.raises(DocumentInputError):
            parse_ocr_payload(data)


class TestJsonFilePageSource:
    @pytest.mark.asyncio
    async def test_load(self, tmp_path, ids):
        path = tmp_path / "ocr.json"
        path.write_text(json.dumps(native_payload(*ids, page_count=5)), encoding="utf-8")

        document = await JsonFilePageSource(path).load()

        assert document.page_count == 5

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        with pytest.raises(DocumentInputError, match="not found"):
            await JsonFilePageSource(tmp_path / "missing.json").load()

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{", encoding="utf-8")

        with pytest.raises(DocumentInputError, match="not valid JSON"):
            await JsonFilePageSource(path).load()


class TestHttpPageSource:
    """Tests for object store reads through the retry envelope."""

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self, settings, recording_sleep, ids):
        shell_file_id, patient_id = ids
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            if len(calls) == 1:
                return httpx.Response(503, text="unavailable")
            return httpx.Response(200, json=native_payload(shell_file_id, patient_id))

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        async with HttpPageSource(settings, client=client, sleep=recording_sleep) as source:
            document = await source.load(shell_file_id, patient_id)
        await client.aclose()

        assert document.page_count == 3
        assert calls == [f"/ocr/{patient_id}/{shell_file_id}.json"] * 2
        assert len(recording_sleep.delays) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_policy(self, settings, recording_sleep, ids):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(502)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        source = HttpPageSource(settings, client=client, sleep=recording_sleep)

        with pytest.raises(RetriesExhaustedError):
            await source.load(*ids)
        await client.aclose()

        assert len(calls) == settings.storage_max_retries + 1

    @pytest.mark.asyncio
    async def test_requires_ids(self, settings):
        async with httpx.AsyncClient() as client:
            source = HttpPageSource(settings, client=client)
            with pytest.raises(DocumentInputError):
                await source.load(None, None)
