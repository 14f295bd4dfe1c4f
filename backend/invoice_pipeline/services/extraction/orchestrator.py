"""Engine orchestration: primary selection, A/B trials, retries and fallback."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from invoice_pipeline.core.config import EngineProfile, PipelineConfig
from invoice_pipeline.core.storage import ObjectStore
from invoice_pipeline.errors import EngineError, PermanentEngineError
from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, weighted_confidence

from .adapter import EngineAdapter
from .engines import BaseEngine, EngineOutput, get_engine
from .merge import RecordDraft

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineAttempt:
    engine: str
    role: str  # primary / secondary / fallback
    attempt: int
    succeeded: bool
    kind: Optional[str] = None
    message: str = ""
    latency_ms: float = 0.0
    cost: float = 0.0
    confidence: Optional[float] = None

    def as_audit(self) -> dict[str, Any]:
        return {
            "engine": self.engine,
            "role": self.role,
            "attempt": self.attempt,
            "status": "succeeded" if self.succeeded else "failed",
            "kind": self.kind,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "cost": self.cost,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class ABTrial:
    engine_a: str
    engine_b: str
    criterion: str
    winner: Optional[str]
    metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    outputs: dict[str, dict[str, Any]] = field(default_factory=dict)

    def as_audit(self) -> dict[str, Any]:
        return {
            "engine_a": self.engine_a,
            "engine_b": self.engine_b,
            "criterion": self.criterion,
            "winner": self.winner,
            "metrics": self.metrics,
            "outputs": self.outputs,
        }


@dataclass(frozen=True)
class ExtractionOutcome:
    record: Optional[CanonicalInvoiceRecord]
    attempts: tuple[EngineAttempt, ...] = ()
    ab_trial: Optional[ABTrial] = None
    failure_kind: Optional[str] = None
    failure_engine: Optional[str] = None
    failure_message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.record is not None

    @property
    def operator_action_required(self) -> bool:
        return self.failure_kind == "unauthorized"

    @property
    def total_cost(self) -> float:
        return round(sum(a.cost for a in self.attempts), 6)


class EnginePool:
    """Bounds concurrent engine calls across every run sharing the pool."""

    def __init__(self, max_concurrent: int) -> None:
        self.max_concurrent = max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = None

    @asynccontextmanager
    async def slot(self):
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        async with self._semaphore:
            yield


def _serialize_output(output: EngineOutput) -> dict[str, Any]:
    return {
        "fields": {k: (v.isoformat() if hasattr(v, "isoformat") else v) for k, v in output.fields.items()},
        "field_confidence": dict(output.field_confidence),
        "model": output.model,
    }


def _criterion_score(criterion: str, output: EngineOutput) -> float:
    if criterion == "cost":
        return -output.cost
    if criterion == "latency":
        return -output.latency_ms
    return weighted_confidence(output.field_confidence)


class EngineOrchestrator:
    def __init__(
        self,
        store: ObjectStore,
        *,
        engine_factory: Callable[[str], BaseEngine] = get_engine,
        pool: Optional[EnginePool] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._engine_factory = engine_factory
        self._pool = pool
        self._rng = rng or random.Random()

    def _pool_for(self, config: PipelineConfig) -> EnginePool:
        if self._pool is None:
            self._pool = EnginePool(config.orchestration.max_concurrent_engine_calls)
        return self._pool

    async def _attempt(
        self,
        locator: str,
        profile: EngineProfile,
        config: PipelineConfig,
        *,
        role: str,
        attempt: int,
    ) -> tuple[Optional[EngineOutput], Optional[EngineError], EngineAttempt]:
        t0 = time.monotonic()
        try:
            engine = self._engine_factory(profile.name)
        except KeyError as exc:
            error = PermanentEngineError(str(exc), engine=profile.name)
            return None, error, EngineAttempt(profile.name, role, attempt, False, kind=error.kind, message=str(error))

        adapter = EngineAdapter(engine, profile, self._store)
        try:
            async with self._pool_for(config).slot():
                output = await adapter.extract(locator, timeout_seconds=config.orchestration.engine_timeout_seconds)
        except EngineError as exc:
            latency = round((time.monotonic() - t0) * 1000, 2)
            logger.warning(
                "Engine attempt failed engine=%s role=%s attempt=%s kind=%s message=%s",
                profile.name,
                role,
                attempt,
                exc.kind,
                exc,
            )
            return None, exc, EngineAttempt(
                profile.name, role, attempt, False, kind=exc.kind, message=str(exc), latency_ms=latency
            )

        return output, None, EngineAttempt(
            profile.name,
            role,
            attempt,
            True,
            latency_ms=output.latency_ms,
            cost=output.cost,
            confidence=weighted_confidence(output.field_confidence),
        )

    async def _attempt_with_retries(
        self,
        locator: str,
        profile: EngineProfile,
        config: PipelineConfig,
        attempts: list[EngineAttempt],
        *,
        role: str,
    ) -> tuple[Optional[EngineOutput], Optional[EngineError]]:
        settings = config.orchestration
        error: Optional[EngineError] = None
        for attempt in range(1, settings.max_retries + 2):
            output, error, record = await self._attempt(locator, profile, config, role=role, attempt=attempt)
            attempts.append(record)
            if output is not None:
                return output, None
            # timeouts go straight to fallback; only transient errors are retried in place
            if error.kind != "transient" or attempt > settings.max_retries:
                break
            if settings.retry_backoff_seconds:
                await asyncio.sleep(settings.retry_backoff_seconds * (2 ** (attempt - 1)))
        return None, error

    def _compare(
        self,
        primary: EngineProfile,
        secondary: EngineProfile,
        primary_output: EngineOutput,
        secondary_output: EngineOutput,
        criterion: str,
    ) -> str:
        score_a = _criterion_score(criterion, primary_output)
        score_b = _criterion_score(criterion, secondary_output)
        if score_b > score_a:
            return secondary.name
        if score_a == score_b and secondary.avg_accuracy > primary.avg_accuracy:
            return secondary.name
        return primary.name

    @staticmethod
    def _failure(
        attempts: list[EngineAttempt], error: Optional[EngineError], ab_trial: Optional[ABTrial] = None
    ) -> ExtractionOutcome:
        return ExtractionOutcome(
            record=None,
            attempts=tuple(attempts),
            ab_trial=ab_trial,
            failure_kind=error.kind if error else "permanent",
            failure_engine=error.engine if error else None,
            failure_message=str(error) if error else "no extraction engine available",
        )

    async def orchestrate(self, locator: str, config: PipelineConfig) -> ExtractionOutcome:
        profiles = config.enabled_engines()
        if not profiles:
            logger.error("No enabled extraction engine for locator=%s", locator)
            return self._failure([], None)

        by_name = {p.name: p for p in config.engines}
        attempts: list[EngineAttempt] = []
        draft = RecordDraft(locator, by_name)
        primary = profiles[0]
        remaining = list(profiles[1:])

        secondary: Optional[EngineProfile] = None
        if config.ab_test.enabled and remaining and self._rng.random() * 100 < config.ab_test.split_percent:
            secondary = remaining.pop(0)

        if secondary is not None:
            (p_out, p_err, p_rec), (s_out, s_err, s_rec) = await asyncio.gather(
                self._attempt(locator, primary, config, role="primary", attempt=1),
                self._attempt(locator, secondary, config, role="secondary", attempt=1),
            )
            attempts.extend([p_rec, s_rec])
            criterion = config.ab_test.comparison_criterion
            metrics = {rec.engine: rec.as_audit() for rec in (p_rec, s_rec)}
            outputs = {out.engine: _serialize_output(out) for out in (p_out, s_out) if out is not None}

            if p_out is not None and s_out is not None:
                winner = self._compare(primary, secondary, p_out, s_out, criterion)
                won, lost = (p_out, s_out) if winner == primary.name else (s_out, p_out)
                draft.absorb(won)
                draft.absorb(lost, fill_only=True)
                trial = ABTrial(primary.name, secondary.name, criterion, winner, metrics, outputs)
                logger.info("A/B trial %s vs %s criterion=%s winner=%s", primary.name, secondary.name, criterion, winner)
                return ExtractionOutcome(record=draft.freeze(), attempts=tuple(attempts), ab_trial=trial)

            if p_out is not None:
                draft.absorb(p_out)
                trial = ABTrial(primary.name, secondary.name, criterion, primary.name, metrics, outputs)
                return ExtractionOutcome(record=draft.freeze(), attempts=tuple(attempts), ab_trial=trial)

            trial_winner = secondary.name if s_out is not None and p_err.allows_fallback else None
            trial = ABTrial(primary.name, secondary.name, criterion, trial_winner, metrics, outputs)
            if not p_err.allows_fallback:
                return self._failure(attempts, p_err, trial)
            if s_out is not None:
                draft.absorb(s_out)
                return ExtractionOutcome(record=draft.freeze(), attempts=tuple(attempts), ab_trial=trial)
            if not s_err.allows_fallback:
                return self._failure(attempts, s_err, trial)
            return await self._fall_back(locator, config, remaining, attempts, draft, s_err, depth_used=1, trial=trial)

        output, error = await self._attempt_with_retries(locator, primary, config, attempts, role="primary")
        if output is not None:
            draft.absorb(output)
            return ExtractionOutcome(record=draft.freeze(), attempts=tuple(attempts))
        if not error.allows_fallback:
            return self._failure(attempts, error)
        return await self._fall_back(locator, config, remaining, attempts, draft, error, depth_used=0)

    async def _fall_back(
        self,
        locator: str,
        config: PipelineConfig,
        remaining: list[EngineProfile],
        attempts: list[EngineAttempt],
        draft: RecordDraft,
        last_error: EngineError,
        *,
        depth_used: int,
        trial: Optional[ABTrial] = None,
    ) -> ExtractionOutcome:
        max_depth = config.orchestration.max_fallback_depth
        for profile in remaining:
            if depth_used >= max_depth:
                break
            depth_used += 1
            logger.info("Falling back to engine=%s after %s from %s", profile.name, last_error.kind, last_error.engine)
            output, error = await self._attempt_with_retries(locator, profile, config, attempts, role="fallback")
            if output is not None:
                draft.absorb(output)
                return ExtractionOutcome(record=draft.freeze(), attempts=tuple(attempts), ab_trial=trial)
            last_error = error
            if not error.allows_fallback:
                break
        return self._failure(attempts, last_error, trial)
