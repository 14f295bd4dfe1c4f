"""OpenAI vision engine: the model reads the page and answers with a JSON field map."""

from __future__ import annotations

import base64
import logging
import time

from invoice_pipeline.errors import PermanentEngineError
from invoice_pipeline.schemas.invoice import FIELD_NAMES
from invoice_pipeline.services.extraction.json_tools import extract_json

from .base import BaseEngine, EngineOutput

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/webp", "image/gif"})

SYSTEM_PROMPT = (
    "You extract data from Brazilian electricity utility invoices. "
    "Answer with one JSON object only, no prose. "
    'Shape: {"fields": {<field>: <value>}, "field_confidence": {<field>: <0..1>}}. '
    "Use only these field names: " + ", ".join(FIELD_NAMES) + ". "
    "Omit fields that are not printed on the invoice. "
    "Dates as YYYY-MM-DD, reference_month as YYYY-MM, numbers without currency symbols."
)


class OpenAIVisionEngine(BaseEngine):
    name = "openai"

    def __init__(self, api_key: str, *, model: str = "gpt-4o-mini", default_confidence: float = 0.9) -> None:
        self._api_key = api_key
        self._model = model
        self._default_confidence = default_confidence

    async def extract(
        self,
        document: bytes,
        *,
        content_type: str,
        timeout_seconds: float = 30.0,
    ) -> EngineOutput:
        import httpx

        if not self._api_key:
            raise PermanentEngineError("OPENAI_API_KEY is not configured", engine=self.name, kind="unauthorized")
        if content_type not in SUPPORTED_CONTENT_TYPES:
            raise PermanentEngineError(
                f"content type {content_type} is not accepted by the vision model",
                engine=self.name,
                kind="unsupported_format",
            )

        encoded = base64.b64encode(document).decode("ascii")
        t0 = time.monotonic()

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                "https://api.openai.com/v1/chat/completions",
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                },
                json={
                    "model": self._model,
                    "temperature": 0,
                    "max_tokens": 2048,
                    "response_format": {"type": "json_object"},
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {
                            "role": "user",
                            "content": [
                                {"type": "text", "text": "Extract every invoice field you can read."},
                                {
                                    "type": "image_url",
                                    "image_url": {"url": f"data:{content_type};base64,{encoded}", "detail": "high"},
                                },
                            ],
                        },
                    ],
                },
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = data["choices"][0]["message"]["content"] or ""
        parsed = extract_json(text)
        if not isinstance(parsed, dict):
            raise PermanentEngineError("model response did not contain a JSON object", engine=self.name)

        fields = parsed.get("fields") if isinstance(parsed.get("fields"), dict) else parsed
        reported = parsed.get("field_confidence") if isinstance(parsed.get("field_confidence"), dict) else {}
        confidences: dict[str, float] = {}
        for key in fields:
            try:
                confidences[key] = float(reported.get(key, self._default_confidence))
            except (TypeError, ValueError):
                confidences[key] = self._default_confidence

        return EngineOutput(
            engine=self.name,
            fields={k: v for k, v in fields.items() if k not in ("field_confidence",)},
            field_confidence=confidences,
            raw_text=text,
            model=self._model,
            latency_ms=round(elapsed, 2),
        )
