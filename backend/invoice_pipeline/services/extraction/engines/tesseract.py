"""Local Tesseract OCR engine. Runs in a worker thread; no network involved."""

from __future__ import annotations

import asyncio
import io
import logging
import time

from invoice_pipeline.errors import PermanentEngineError
from invoice_pipeline.services.extraction.text_fields import parse_invoice_text

from .base import BaseEngine, EngineOutput

logger = logging.getLogger(__name__)

SUPPORTED_CONTENT_TYPES = frozenset({"image/jpeg", "image/png", "image/tiff", "image/bmp", "image/gif", "image/webp"})


class TesseractEngine(BaseEngine):
    name = "tesseract"

    def __init__(self, *, tesseract_cmd: str = "", lang: str = "por") -> None:
        self._tesseract_cmd = tesseract_cmd
        self._lang = lang

    def _ocr(self, document: bytes) -> tuple[str, float]:
        import pytesseract
        from PIL import Image, UnidentifiedImageError

        if self._tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = self._tesseract_cmd
        try:
            image = Image.open(io.BytesIO(document))
            image.load()
        except UnidentifiedImageError as exc:
            raise PermanentEngineError("document is not a readable image", engine=self.name, kind="unsupported_format") from exc
        if image.mode not in ("L", "RGB"):
            image = image.convert("RGB")

        try:
            data = pytesseract.image_to_data(image, lang=self._lang, output_type=pytesseract.Output.DICT)
        except pytesseract.TesseractNotFoundError as exc:
            raise PermanentEngineError("tesseract binary not found", engine=self.name) from exc

        confidences: list[float] = []
        last_line = None
        lines: list[list[str]] = []
        for index, word in enumerate(data.get("text", [])):
            word = (word or "").strip()
            if not word:
                continue
            key = (data["block_num"][index], data["par_num"][index], data["line_num"][index])
            if key != last_line:
                lines.append([])
                last_line = key
            lines[-1].append(word)
            conf = float(data["conf"][index])
            if conf >= 0:
                confidences.append(conf / 100.0)

        text = "\n".join(" ".join(line) for line in lines)
        mean_confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return text, mean_confidence

    async def extract(
        self,
        document: bytes,
        *,
        content_type: str,
        timeout_seconds: float = 30.0,
    ) -> EngineOutput:
        if content_type not in SUPPORTED_CONTENT_TYPES:
            raise PermanentEngineError(
                f"content type {content_type} is not supported", engine=self.name, kind="unsupported_format"
            )
        t0 = time.monotonic()
        text, base_confidence = await asyncio.to_thread(self._ocr, document)
        elapsed = (time.monotonic() - t0) * 1000

        parsed = parse_invoice_text(text)
        return EngineOutput(
            engine=self.name,
            fields={name: value for name, (value, _certainty) in parsed.items()},
            field_confidence={
                name: round(base_confidence * certainty, 6) for name, (_value, certainty) in parsed.items()
            },
            raw_text=text,
            model=f"tesseract-{self._lang}",
            latency_ms=round(elapsed, 2),
        )
