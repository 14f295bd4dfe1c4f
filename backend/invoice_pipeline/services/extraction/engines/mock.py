"""Mock engine: deterministic, optionally scripted outputs for development and tests."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Iterable, Union

from .base import BaseEngine, EngineOutput

SAMPLE_FIELDS: dict[str, Any] = {
    "uc_code": "3004589712",
    "reference_month": "2024-03",
    "energy_kwh": 1250.5,
    "total_r$": 890.45,
    "icms_aliquota": 18.0,
    "icms_valor": 160.28,
    "pis_valor": 8.9,
    "cofins_valor": 41.02,
    "valor_tusd": 380.1,
    "valor_te": 300.1,
    "data_leitura": "2024-03-01",
    "data_emissao": "2024-03-03",
    "data_vencimento": "2024-03-20",
}


class Delay:
    """Script step: sleep before answering (used to provoke timeouts)."""

    def __init__(self, seconds: float, then: "Step | None" = None) -> None:
        self.seconds = seconds
        self.then = then


Step = Union[dict, EngineOutput, BaseException, Delay]


class MockEngine(BaseEngine):
    """Answers with the next scripted step, or with ``SAMPLE_FIELDS`` when the script is exhausted.

    A step is a field dict, a ready ``EngineOutput``, an exception to raise,
    or a ``Delay``.
    """

    def __init__(
        self,
        name: str = "mock",
        *,
        steps: Iterable[Step] = (),
        confidence: float = 0.95,
        fields: dict[str, Any] | None = None,
    ) -> None:
        self.name = name
        self._steps: deque[Step] = deque(steps)
        self._confidence = confidence
        self._fields = dict(SAMPLE_FIELDS if fields is None else fields)
        self.calls = 0

    async def extract(
        self,
        document: bytes,
        *,
        content_type: str,
        timeout_seconds: float = 30.0,
    ) -> EngineOutput:
        self.calls += 1
        t0 = time.monotonic()
        step: Step | None = self._steps.popleft() if self._steps else None
        while isinstance(step, Delay):
            await asyncio.sleep(step.seconds)
            step = step.then
        if isinstance(step, BaseException):
            raise step
        if isinstance(step, EngineOutput):
            return step
        fields = dict(self._fields if step is None else step)
        elapsed = (time.monotonic() - t0) * 1000
        return EngineOutput(
            engine=self.name,
            fields=fields,
            field_confidence={key: self._confidence for key in fields},
            raw_text="",
            model="mock-v1",
            latency_ms=round(elapsed, 2),
        )
