"""Google Cloud Vision engine: document text detection + regex field parsing."""

from __future__ import annotations

import base64
import logging
import time
from typing import Any

from invoice_pipeline.errors import PermanentEngineError, TransientEngineError
from invoice_pipeline.services.extraction.text_fields import parse_invoice_text

from .base import BaseEngine, EngineOutput

logger = logging.getLogger(__name__)

IMAGE_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/gif", "image/webp", "image/bmp", "image/tiff"})
PDF_CONTENT_TYPE = "application/pdf"
API_ROOT = "https://vision.googleapis.com/v1"

# google.rpc.Code values reported inside an otherwise successful 200 response
_RPC_UNAUTHORIZED = {7, 16}
_RPC_TRANSIENT = {4, 8, 10, 13, 14}
_RPC_BAD_INPUT = {3}


def _raise_for_rpc_error(error: dict[str, Any], engine: str) -> None:
    code = int(error.get("code") or 0)
    message = str(error.get("message") or "vision error")
    if code in _RPC_UNAUTHORIZED:
        raise PermanentEngineError(message, engine=engine, kind="unauthorized")
    if code in _RPC_TRANSIENT:
        raise TransientEngineError(message, engine=engine)
    if code in _RPC_BAD_INPUT:
        raise PermanentEngineError(message, engine=engine, kind="unsupported_format")
    raise PermanentEngineError(message, engine=engine)


def _page_confidence(annotation: dict[str, Any]) -> float | None:
    pages = annotation.get("pages") or []
    values = [float(p["confidence"]) for p in pages if isinstance(p, dict) and p.get("confidence") is not None]
    if not values:
        return None
    return sum(values) / len(values)


class GoogleVisionEngine(BaseEngine):
    name = "google_vision"

    def __init__(self, api_key: str, *, default_confidence: float = 0.9) -> None:
        self._api_key = api_key
        self._default_confidence = default_confidence

    def _request(self, document: bytes, content_type: str) -> tuple[str, dict[str, Any]]:
        content = base64.b64encode(document).decode("ascii")
        features = [{"type": "DOCUMENT_TEXT_DETECTION"}]
        if content_type == PDF_CONTENT_TYPE:
            return "files:annotate", {
                "requests": [
                    {
                        "inputConfig": {"content": content, "mimeType": PDF_CONTENT_TYPE},
                        "features": features,
                        "pages": [1, 2],
                    }
                ]
            }
        return "images:annotate", {
            "requests": [
                {
                    "image": {"content": content},
                    "features": features,
                    "imageContext": {"languageHints": ["pt"]},
                }
            ]
        }

    @staticmethod
    def _annotations(endpoint: str, data: dict[str, Any]) -> list[dict[str, Any]]:
        responses = data.get("responses") or []
        if endpoint == "files:annotate":
            nested: list[dict[str, Any]] = []
            for item in responses:
                nested.extend(item.get("responses") or [])
            return nested
        return responses

    async def extract(
        self,
        document: bytes,
        *,
        content_type: str,
        timeout_seconds: float = 30.0,
    ) -> EngineOutput:
        import httpx

        if not self._api_key:
            raise PermanentEngineError("GOOGLE_CLOUD_API_KEY is not configured", engine=self.name, kind="unauthorized")
        if content_type not in IMAGE_CONTENT_TYPES and content_type != PDF_CONTENT_TYPE:
            raise PermanentEngineError(
                f"content type {content_type} is not supported", engine=self.name, kind="unsupported_format"
            )

        endpoint, payload = self._request(document, content_type)
        t0 = time.monotonic()
        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(f"{API_ROOT}/{endpoint}", params={"key": self._api_key}, json=payload)
            resp.raise_for_status()
            data = resp.json()
        elapsed = (time.monotonic() - t0) * 1000

        texts: list[str] = []
        page_confidences: list[float] = []
        for annotation in self._annotations(endpoint, data):
            if annotation.get("error"):
                _raise_for_rpc_error(annotation["error"], self.name)
            full = annotation.get("fullTextAnnotation") or {}
            if full.get("text"):
                texts.append(full["text"])
            confidence = _page_confidence(full)
            if confidence is not None:
                page_confidences.append(confidence)

        text = "\n".join(texts)
        base_confidence = (
            sum(page_confidences) / len(page_confidences) if page_confidences else self._default_confidence
        )
        parsed = parse_invoice_text(text)
        logger.debug("Google Vision parsed %s fields from %s chars", len(parsed), len(text))

        return EngineOutput(
            engine=self.name,
            fields={name: value for name, (value, _certainty) in parsed.items()},
            field_confidence={
                name: round(base_confidence * certainty, 6) for name, (_value, certainty) in parsed.items()
            },
            raw_text=text,
            model="document-text-detection",
            latency_ms=round(elapsed, 2),
        )
