"""Read-only sources of OCR'd pages.

Two payload shapes are accepted:
- native: ``{"shell_file_id", "patient_id", "pages": [{"page_number", "lines" | "text", "confidence"}]}``
- vision-style: ``{"fullTextAnnotation": {"pages": [...]}}`` where pages are
  numbered by position and carry ``text``/``confidence``
"""

import asyncio
import json
from pathlib import Path
from typing import Any, Optional, Protocol, Union
from uuid import UUID

import httpx
import structlog
from pydantic import ValidationError

from encdisc.config import Settings
from encdisc.errors import DocumentInputError
from encdisc.models import Document

from .retry import RetryContext, RetryPolicy, retry_with_backoff

logger = structlog.get_logger(__name__)

IdLike = Union[UUID, str, None]


class PageSource(Protocol):
    """Anything that can produce the OCR'd document for a shell file."""

    async def load(self, shell_file_id: IdLike = None, patient_id: IdLike = None) -> Document:
        ...


def _vision_pages(annotation: dict) -> list[dict]:
    pages = []
    for index, page in enumerate(annotation.get("pages") or [], start=1):
        pages.append(
            {
                "page_number": page.get("page_number") or index,
                "text": page.get("text") or "",
                "confidence": page.get("confidence") or 0.0,
                "width": page.get("width"),
                "height": page.get("height"),
            }
        )
    return pages


def parse_ocr_payload(
    data: Any,
    shell_file_id: IdLike = None,
    patient_id: IdLike = None,
) -> Document:
    """Build a ``Document`` from a decoded OCR payload.

    Explicit ids win over ids embedded in the payload.

    Raises:
        DocumentInputError: payload shape is wrong or ids are missing.
    """
    if not isinstance(data, dict):
        raise DocumentInputError(str(shell_file_id) if shell_file_id else None, "OCR payload must be a JSON object")

    shell_file_id = shell_file_id or data.get("shell_file_id")
    patient_id = patient_id or data.get("patient_id")
    if not shell_file_id or not patient_id:
        raise DocumentInputError(
            str(shell_file_id) if shell_file_id else None,
            "OCR payload needs shell_file_id and patient_id",
        )

    if isinstance(data.get("fullTextAnnotation"), dict):
        pages = _vision_pages(data["fullTextAnnotation"])
    else:
        pages = data.get("pages")
    if not isinstance(pages, list):
        raise DocumentInputError(str(shell_file_id), "OCR payload has no pages list")

    try:
        return Document(shell_file_id=shell_file_id, patient_id=patient_id, pages=pages)
    except ValidationError as exc:
        raise DocumentInputError(str(shell_file_id), f"Invalid OCR payload: {exc.error_count()} error(s)") from exc


class JsonFilePageSource:
    """OCR output stored as a local JSON file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self, shell_file_id: IdLike = None, patient_id: IdLike = None) -> Document:
        if not self.path.exists():
            raise DocumentInputError(
                str(shell_file_id) if shell_file_id else None,
                f"OCR file not found: {self.path}",
            )
        raw = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DocumentInputError(
                str(shell_file_id) if shell_file_id else None,
                f"OCR file is not valid JSON: {self.path}",
            ) from exc

        document = parse_ocr_payload(data, shell_file_id, patient_id)
        logger.debug("pages.loaded", source=str(self.path), page_count=document.page_count)
        return document


class HttpPageSource:
    """OCR output fetched from an object store over HTTP.

    The URL comes from ``Settings.ocr_url_template`` with ``{patient_id}`` and
    ``{shell_file_id}`` placeholders. Reads go through the storage retry policy.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[httpx.AsyncClient] = None,
        retry_context: Optional[RetryContext] = None,
        **retry_kwargs,
    ):
        self.settings = settings
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.storage_timeout_seconds)
        )
        self.retry_context = retry_context or RetryContext()
        self.retry_kwargs = retry_kwargs

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "HttpPageSource":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def load(self, shell_file_id: IdLike = None, patient_id: IdLike = None) -> Document:
        if not shell_file_id or not patient_id:
            raise DocumentInputError(
                str(shell_file_id) if shell_file_id else None,
                "HTTP page source needs shell_file_id and patient_id",
            )
        url = self.settings.ocr_url_template.format(
            patient_id=patient_id, shell_file_id=shell_file_id
        )

        async def fetch() -> Any:
            response = await self._client.get(url)
            response.raise_for_status()
            return response.json()

        data = await retry_with_backoff(
            fetch,
            RetryPolicy.for_storage_read(self.settings),
            self.retry_context,
            **self.retry_kwargs,
        )
        document = parse_ocr_payload(data, shell_file_id, patient_id)
        logger.debug("pages.fetched", url=url, page_count=document.page_count)
        return document
