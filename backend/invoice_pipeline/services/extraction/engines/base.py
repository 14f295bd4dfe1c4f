"""Abstract base for all extraction engines."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class EngineOutput:
    """Immutable field map returned by every engine call."""

    engine: str
    fields: dict[str, Any] = field(default_factory=dict)
    field_confidence: dict[str, float] = field(default_factory=dict)
    raw_text: str = ""
    model: str = ""
    latency_ms: float = 0.0
    cost: float = 0.0

    @property
    def confidence(self) -> float:
        """Mean confidence over the fields this engine populated."""
        values = [self.field_confidence.get(name, 0.0) for name in self.fields]
        if not values:
            return 0.0
        return round(sum(values) / len(values), 6)


class BaseEngine(abc.ABC):
    """Contract that every extraction engine must implement.

    Engines own their transport and raise transport errors (``httpx``) or
    ``EngineError`` subclasses; the adapter turns everything else into a
    classified failure.
    """

    name: str = "base"

    @abc.abstractmethod
    async def extract(
        self,
        document: bytes,
        *,
        content_type: str,
        timeout_seconds: float = 30.0,
    ) -> EngineOutput:
        """Read *document* and return raw field values with per-field confidences."""
