"""Tests for the HTTP inference client."""

import json

import httpx
import pytest

from encdisc.errors import InferenceHTTPError, MalformedResponseError
from encdisc.pipeline.inference import HttpInferenceClient, InferenceRequest, calculate_cost


@pytest.fixture
def request_for_chunk():
    return InferenceRequest(
        chunk_number=2,
        system_prompt="system",
        user_prompt="pages",
        model="gpt-4o-mini",
        max_output_tokens=1024,
    )


def client_with(settings, handler):
    transport = httpx.MockTransport(handler)
    return HttpInferenceClient(
        settings,
        client=httpx.AsyncClient(transport=transport, base_url=settings.ai_base_url),
    )


def completion(content, model="gpt-4o-mini", prompt_tokens=1200, completion_tokens=300):
    return {
        "model": model,
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": prompt_tokens, "completion_tokens": completion_tokens},
    }


class TestHttpInferenceClient:
    """Tests for request building and response handling."""

    @pytest.mark.asyncio
    async def test_success(self, settings, request_for_chunk):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=completion('{"encounters": []}'))

        async with client_with(settings, handler) as client:
            response = await client.complete(request_for_chunk)

        assert response.content == '{"encounters": []}'
        assert response.input_tokens == 1200
        assert response.output_tokens == 300
        assert response.model == "gpt-4o-mini"

        sent = json.loads(seen[0].content)
        assert seen[0].url.path == "/v1/chat/completions"
        assert sent["max_tokens"] == 1024
        assert sent["response_format"] == {"type": "json_object"}
        assert [m["role"] for m in sent["messages"]] == ["system", "user"]

    @pytest.mark.asyncio
    async def test_rate_limit_carries_headers(self, settings, request_for_chunk):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"}, text="slow down")

        async with client_with(settings, handler) as client:
            with pytest.raises(InferenceHTTPError) as exc_info:
                await client.complete(request_for_chunk)

        assert exc_info.value.status == 429
        assert exc_info.value.headers["retry-after"] == "7"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            {"choices": []},
            {"choices": [{"message": {"content": "   "}}]},
            {"unexpected": True},
        ],
    )
    async def test_missing_content(self, settings, request_for_chunk, body):
        def handler(request):
            return httpx.Response(200, json=body)

        async with client_with(settings, handler) as client:
            with pytest.raises(MalformedResponseError) as exc_info:
                await client.complete(request_for_chunk)

        assert exc_info.value.chunk_number == 2

    @pytest.mark.asyncio
    async def test_missing_usage_defaults_to_zero(self, settings, request_for_chunk):
        def handler(request):
            return httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]})

        async with client_with(settings, handler) as client:
            response = await client.complete(request_for_chunk)

        assert response.input_tokens == 0
        assert response.model == "gpt-4o-mini"


def test_calculate_cost(settings):
    assert calculate_cost(settings, 1_000_000, 1_000_000) == pytest.approx(0.75)
    assert calculate_cost(settings, 0, 0) == 0.0
