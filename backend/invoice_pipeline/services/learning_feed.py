"""Continuous-learning feed: captures labelled outcomes and serves advisory predictions.

Submissions are fire-and-forget. A failing write is logged and never affects
the run that produced it. Predictions come from a baseline model (per-unit
approval rate and historical z-scores) and carry a model version so they can
be told apart from a trained model later.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from invoice_pipeline.models.invoice import LearningSample
from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, ValidationReport

from .validation.history import ANOMALY_FIELDS, HistoricalContext, z_score

logger = logging.getLogger(__name__)

MODEL_VERSION = "baseline-v2"
MIN_SAMPLES_FOR_Z = 3
# pseudo-count weighing extraction confidence against the unit's labelled outcomes
UNIT_PRIOR_WEIGHT = 2.0
# logistic centre and slope for |z| -> anomaly probability
ANOMALY_Z_CENTRE = 3.0
ANOMALY_Z_SLOPE = 2.0


@dataclass(frozen=True)
class ValidationPrediction:
    approve_probability: float
    model_version: str
    samples: int = 0

    @property
    def reject_probability(self) -> float:
        return round(1.0 - self.approve_probability, 6)


@dataclass(frozen=True)
class AnomalyPrediction:
    anomaly_probability: float
    model_version: str
    max_abs_z: Optional[float] = None


def extract_features(record: CanonicalInvoiceRecord) -> dict[str, Any]:
    energy = record.value("energy_kwh")
    total = record.value("total_r$")
    month = record.value("reference_month") or ""
    return {
        "energy_kwh": energy,
        "total_r$": total,
        "cost_per_kwh": round(total / energy, 6) if total is not None and energy else None,
        "subgrupo_tensao": record.value("subgrupo_tensao"),
        "bandeira_tipo": record.value("bandeira_tipo"),
        "month": int(month[5:7]) if len(month) == 7 and month[5:7].isdigit() else None,
        "icms_aliquota": record.value("icms_aliquota"),
        "confidence_score": record.confidence,
        "extraction_method": record.extraction_method,
    }


def _logistic(x: float) -> float:
    return 1.0 / (1.0 + math.exp(-x))


class LearningFeed:
    def __init__(self, session_factory: Callable[[], Session], *, enabled: bool = True) -> None:
        self._session_factory = session_factory
        self.enabled = enabled
        self._pending: set[asyncio.Task] = set()

    # --- capture ---

    def submit(
        self,
        *,
        run_id: uuid.UUID,
        record: CanonicalInvoiceRecord,
        report: Optional[ValidationReport],
        decision: str,
        source: str,
    ) -> Optional[asyncio.Task]:
        """Schedule a best-effort write of one labelled example."""
        if not self.enabled:
            return None
        sample = {
            "run_id": run_id,
            "record_id": record.id,
            "unit_id": record.unit_id,
            "source": source,
            "decision": decision,
            "features": extract_features(record),
            "results": [r.model_dump(mode="json") for r in report.results] if report else [],
        }
        task = asyncio.get_running_loop().create_task(self._write(sample))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, sample: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._write_sync, sample)
        except Exception:
            logger.exception("Learning feed submission failed run_id=%s", sample.get("run_id"))

    def _write_sync(self, sample: dict[str, Any]) -> None:
        db = self._session_factory()
        try:
            db.add(LearningSample(**sample))
            db.commit()
        finally:
            db.close()

    async def drain(self) -> None:
        """Wait for submissions still in flight."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- predictions ---

    def _unit_outcomes(self, unit_id: Optional[str]) -> tuple[int, int]:
        if not unit_id:
            return 0, 0
        db = self._session_factory()
        try:
            decisions = db.execute(select(LearningSample.decision).where(LearningSample.unit_id == unit_id)).scalars().all()
        finally:
            db.close()
        approved = sum(1 for d in decisions if d == "approved")
        return approved, len(decisions)

    def predict(
        self,
        record: CanonicalInvoiceRecord,
        history: HistoricalContext,
    ) -> tuple[ValidationPrediction, AnomalyPrediction]:
        approved, total = self._unit_outcomes(record.unit_id)
        unit_rate = (approved + 1) / (total + 2)
        # the unit's track record takes over from confidence as labels accumulate
        weight = total / (total + UNIT_PRIOR_WEIGHT)
        approve_probability = round(weight * unit_rate + (1.0 - weight) * record.confidence, 6)

        zs: list[float] = []
        features = extract_features(record)
        for name in ANOMALY_FIELDS:
            value = features.get(name)
            if value is None:
                continue
            stats = z_score(float(value), history.values(name), min_samples=MIN_SAMPLES_FOR_Z)
            if stats is not None:
                zs.append(abs(stats.z))
        max_z = max(zs) if zs else None
        anomaly_probability = (
            round(_logistic(ANOMALY_Z_SLOPE * (max_z - ANOMALY_Z_CENTRE)), 6) if max_z is not None else 0.0
        )
        return (
            ValidationPrediction(approve_probability=approve_probability, model_version=MODEL_VERSION, samples=total),
            AnomalyPrediction(
                anomaly_probability=anomaly_probability,
                model_version=MODEL_VERSION,
                max_abs_z=round(max_z, 4) if max_z is not None else None,
            ),
        )
