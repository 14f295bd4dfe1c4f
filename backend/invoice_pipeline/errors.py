"""Exception taxonomy shared by the extraction, validation and run layers."""

from __future__ import annotations

from typing import Literal

EngineFailureKind = Literal["timeout", "unauthorized", "unsupported_format", "transient", "permanent"]

# Kinds that allow the orchestrator to try the next engine.
FALLBACK_KINDS = frozenset({"timeout", "transient"})


class PipelineError(Exception):
    """Base class for every error raised by the invoice pipeline."""


class EngineError(PipelineError):
    kind: EngineFailureKind = "permanent"

    def __init__(self, message: str, *, engine: str = "", kind: EngineFailureKind | None = None) -> None:
        super().__init__(message)
        self.engine = engine
        if kind is not None:
            self.kind = kind

    @property
    def allows_fallback(self) -> bool:
        return self.kind in FALLBACK_KINDS

    def __repr__(self) -> str:
        return f"{type(self).__name__}(engine={self.engine!r}, kind={self.kind!r}, message={str(self)!r})"


class TransientEngineError(EngineError):
    """Timeouts, throttling, 5xx and connection errors. Worth retrying or falling back."""

    kind: EngineFailureKind = "transient"


class PermanentEngineError(EngineError):
    """Rejected credentials, unsupported documents or malformed responses."""

    kind: EngineFailureKind = "permanent"


class ValidationConfigError(PipelineError):
    """The rule set or its thresholds are malformed. Fails the run instead of being ignored."""


class HistoricalContextUnavailable(PipelineError):
    """The record store could not serve historical values for a unit."""


class InvalidTransitionError(PipelineError):
    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid transition: {current} -> {new}")
        self.current = current
        self.new = new


class RunNotFoundError(PipelineError):
    pass
