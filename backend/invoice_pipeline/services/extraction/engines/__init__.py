"""Engine factory: returns the engine instance for a configured engine name."""

from __future__ import annotations

import logging

from invoice_pipeline.core.config import get_settings

from .base import BaseEngine, EngineOutput
from .mock import MockEngine

logger = logging.getLogger(__name__)

__all__ = ["get_engine", "BaseEngine", "EngineOutput", "MockEngine", "KNOWN_ENGINES"]

KNOWN_ENGINES = ("openai", "google_vision", "tesseract", "mock")


def get_engine(engine_name: str) -> BaseEngine:
    """Return an engine instance for *engine_name*.

    Missing credentials are not papered over: the engine is still returned and
    reports ``unauthorized`` on its first call, so the run surfaces the
    misconfiguration to an operator.
    """
    settings = get_settings()
    name = engine_name.lower().strip()

    if name == "mock":
        return MockEngine()

    if name == "openai":
        if not settings.openai_api_key:
            logger.warning("OPENAI_API_KEY not set - openai engine calls will be rejected")
        from .openai_vision import OpenAIVisionEngine

        return OpenAIVisionEngine(api_key=settings.openai_api_key, model=settings.openai_vision_model)

    if name == "google_vision":
        if not settings.google_cloud_api_key:
            logger.warning("GOOGLE_CLOUD_API_KEY not set - google_vision engine calls will be rejected")
        from .google_vision import GoogleVisionEngine

        return GoogleVisionEngine(api_key=settings.google_cloud_api_key)

    if name == "tesseract":
        from .tesseract import TesseractEngine

        return TesseractEngine(tesseract_cmd=settings.tesseract_cmd, lang=settings.tesseract_lang)

    raise KeyError(f"Unknown extraction engine: {engine_name!r}")
