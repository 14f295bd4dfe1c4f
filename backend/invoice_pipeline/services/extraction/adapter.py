"""Uniform call contract around an extraction engine.

``EngineAdapter.extract`` either returns a normalized ``EngineOutput`` or raises
an ``EngineError`` whose ``kind`` is one of timeout / unauthorized /
unsupported_format / transient / permanent. It never retries.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from invoice_pipeline.core.config import EngineProfile
from invoice_pipeline.core.storage import ObjectNotFoundError, ObjectStore, ObjectStoreError
from invoice_pipeline.errors import EngineError, PermanentEngineError, TransientEngineError
from invoice_pipeline.schemas.invoice import attribute_name, coerce_fields

from .engines.base import BaseEngine, EngineOutput

logger = logging.getLogger(__name__)

_UNSUPPORTED_HINTS = ("unsupported", "invalid image", "bad image", "image format", "cannot decode")


def classify_http_error(exc: httpx.HTTPStatusError, engine: str) -> EngineError:
    status = exc.response.status_code
    message = f"HTTP {status} from {engine}"
    if status in (401, 403):
        return PermanentEngineError(message, engine=engine, kind="unauthorized")
    if status == 415:
        return PermanentEngineError(message, engine=engine, kind="unsupported_format")
    if status in (408, 429) or status >= 500:
        return TransientEngineError(message, engine=engine)
    if status == 400:
        body = exc.response.text.lower()
        if any(hint in body for hint in _UNSUPPORTED_HINTS):
            return PermanentEngineError(message, engine=engine, kind="unsupported_format")
    return PermanentEngineError(message, engine=engine)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


class EngineAdapter:
    def __init__(self, engine: BaseEngine, profile: EngineProfile, store: ObjectStore) -> None:
        self.engine = engine
        self.profile = profile
        self._store = store

    @property
    def name(self) -> str:
        return self.profile.name

    async def _call(self, locator: str, timeout_seconds: float) -> EngineOutput:
        document = await asyncio.to_thread(self._store.get, locator)
        return await self.engine.extract(
            document.content,
            content_type=document.content_type,
            timeout_seconds=timeout_seconds,
        )

    async def extract(self, locator: str, *, timeout_seconds: float) -> EngineOutput:
        name = self.name
        t0 = time.monotonic()
        try:
            output = await asyncio.wait_for(self._call(locator, timeout_seconds), timeout=timeout_seconds)
        except asyncio.CancelledError:
            raise
        except EngineError as exc:
            exc.engine = exc.engine or name
            raise
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientEngineError(
                f"{name} did not answer within {timeout_seconds}s", engine=name, kind="timeout"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise classify_http_error(exc, name) from exc
        except httpx.TransportError as exc:
            raise TransientEngineError(f"{name} transport error: {exc}", engine=name) from exc
        except ObjectNotFoundError as exc:
            raise PermanentEngineError(str(exc), engine=name) from exc
        except ObjectStoreError as exc:
            raise TransientEngineError(str(exc), engine=name) from exc
        except Exception as exc:
            logger.exception("Engine %s failed with an unexpected error", name)
            raise PermanentEngineError(f"{name} failed: {exc}", engine=name) from exc

        elapsed = (time.monotonic() - t0) * 1000
        fields = coerce_fields(output.fields, source=name)
        reported = output.field_confidence
        field_confidence = {
            key: _clamp(reported.get(key, reported.get(attribute_name(key), self.profile.avg_accuracy)))
            for key in fields
        }
        return EngineOutput(
            engine=name,
            fields=fields,
            field_confidence=field_confidence,
            raw_text=output.raw_text,
            model=output.model,
            latency_ms=round(elapsed, 2),
            cost=self.profile.cost_per_call,
        )
