"""Historical series for a billing unit and the z-score helper used by anomaly rules."""

from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field
from typing import Optional, Protocol

from invoice_pipeline.errors import HistoricalContextUnavailable

logger = logging.getLogger(__name__)

ANOMALY_FIELDS = ("energy_kwh", "cost_per_kwh", "total_r$")


class HistorySource(Protocol):
    def get_historical(self, unit_id: str, field: str, limit: int) -> list[float]: ...


@dataclass(frozen=True)
class HistoricalContext:
    unit_id: Optional[str]
    # newest first
    series: dict[str, tuple[float, ...]] = field(default_factory=dict)
    available: bool = True

    def values(self, name: str) -> tuple[float, ...]:
        return self.series.get(name, ())

    @classmethod
    def unavailable(cls, unit_id: Optional[str]) -> "HistoricalContext":
        return cls(unit_id=unit_id, series={}, available=False)


def load_historical_context(
    source: HistorySource,
    unit_id: Optional[str],
    *,
    limit: int,
    fields: tuple[str, ...] = ANOMALY_FIELDS,
) -> HistoricalContext:
    """Read the last *limit* values of every anomaly field for *unit_id*.

    Any store failure surfaces as ``HistoricalContextUnavailable``.
    """
    if not unit_id:
        return HistoricalContext(unit_id=None)
    series: dict[str, tuple[float, ...]] = {}
    for name in fields:
        try:
            values = source.get_historical(unit_id, name, limit)
        except HistoricalContextUnavailable:
            raise
        except Exception as exc:
            raise HistoricalContextUnavailable(f"history for unit {unit_id} field {name} unavailable: {exc}") from exc
        series[name] = tuple(float(v) for v in values if v is not None)
    return HistoricalContext(unit_id=unit_id, series=series)


@dataclass(frozen=True)
class ZScore:
    value: float
    mean: float
    stdev: float
    samples: int

    @property
    def z(self) -> float:
        return (self.value - self.mean) / self.stdev


def z_score(value: float, series: tuple[float, ...], *, min_samples: int) -> Optional[ZScore]:
    """Sample-stdev z-score of *value* against *series*; ``None`` when it cannot be computed."""
    if len(series) < max(2, min_samples):
        return None
    stdev = statistics.stdev(series)
    if stdev == 0:
        return None
    return ZScore(value=value, mean=statistics.fmean(series), stdev=stdev, samples=len(series))
