"""AI inference client (OpenAI-compatible chat completions over httpx).

One request per chunk. The payload is built once by the extractor and resent
unchanged on retries, so the call is idempotent from the caller's side.
HTTP failures surface as ``InferenceHTTPError`` with the response headers
attached, which lets the retry envelope honor ``Retry-After``.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

import httpx

from encdisc.config import Settings
from encdisc.errors import InferenceHTTPError, MalformedResponseError


@dataclass(frozen=True)
class InferenceRequest:
    """Fully-built prompt for one chunk."""

    chunk_number: int
    system_prompt: str
    user_prompt: str
    model: str
    max_output_tokens: int = 8192
    temperature: float = 0.0

    def payload(self) -> dict:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_output_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": self.user_prompt},
            ],
        }


@dataclass
class InferenceResponse:
    """Raw model output plus token usage for one call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    raw: dict = field(default_factory=dict, repr=False)


class InferenceClient(Protocol):
    """Anything that can answer an ``InferenceRequest``."""

    async def complete(self, request: InferenceRequest) -> InferenceResponse:
        ...


def calculate_cost(settings: Settings, input_tokens: int, output_tokens: int) -> float:
    """USD cost of a call from the configured per-million token prices."""
    return (
        input_tokens * settings.ai_input_cost_per_million / 1_000_000
        + output_tokens * settings.ai_output_cost_per_million / 1_000_000
    )


class HttpInferenceClient:
    """Chat completions client with a bounded per-request timeout.

    The client never retries; callers wrap it in the retry envelope.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize client.

        Args:
            settings: Run configuration (base URL, key, timeout).
            client: Pre-built httpx client, mainly for tests.
        """
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=settings.ai_base_url,
            timeout=httpx.Timeout(settings.ai_timeout_seconds, connect=10.0),
            headers={"Authorization": f"Bearer {settings.ai_api_key}"},
        )

    async def __aenter__(self) -> "HttpInferenceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def complete(self, request: InferenceRequest) -> InferenceResponse:
        """Send one chat completion request.

        Raises:
            InferenceHTTPError: non-2xx response.
            MalformedResponseError: 2xx response without usable content.
            httpx.TimeoutException / httpx.NetworkError: transport failures.
        """
        response = await self._client.post("/chat/completions", json=request.payload())

        if response.status_code >= 400:
            raise InferenceHTTPError(
                status=response.status_code,
                message=response.text[:500],
                headers=dict(response.headers),
            )

        try:
            data = response.json()
            content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise MalformedResponseError(
                chunk_number=request.chunk_number,
                message=f"Inference response missing message content: {exc}",
            ) from exc

        if isinstance(content, list):
            content = "".join(
                str(part.get("text", "")) for part in content if isinstance(part, dict)
            )
        if not content or not str(content).strip():
            raise MalformedResponseError(
                chunk_number=request.chunk_number,
                message="Inference response returned empty content",
            )

        usage = data.get("usage") or {}
        return InferenceResponse(
            content=str(content),
            model=data.get("model") or request.model,
            input_tokens=int(usage.get("prompt_tokens", 0) or 0),
            output_tokens=int(usage.get("completion_tokens", 0) or 0),
            raw=data,
        )
