"""Runs the enabled rule set over a record and aggregates a validation score."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from invoice_pipeline.core.config import SEVERITY_LEVELS, ValidationSettings
from invoice_pipeline.errors import ValidationConfigError
from invoice_pipeline.schemas.invoice import (
    CanonicalInvoiceRecord,
    FindingCategory,
    Severity,
    ValidationReport,
    ValidationResult,
)

from .history import HistoricalContext
from .rules import RULES

logger = logging.getLogger(__name__)

_RULE_CATEGORIES = {
    "mandatory-fields": FindingCategory.MISSING_FIELD,
    "value-ranges": FindingCategory.OUT_OF_RANGE,
    "date-consistency": FindingCategory.OUT_OF_RANGE,
    "arithmetic-validation": FindingCategory.CROSS_FIELD_ARITHMETIC,
    "meter-reading-consistency": FindingCategory.CROSS_FIELD_ARITHMETIC,
    "tributary-validation": FindingCategory.CROSS_FIELD_ARITHMETIC,
    "bandeira-validation": FindingCategory.CROSS_FIELD_ARITHMETIC,
    "energy-consumption-anomaly": FindingCategory.HISTORICAL_ANOMALY,
    "cost-per-kwh-anomaly": FindingCategory.HISTORICAL_ANOMALY,
    "total-amount-anomaly": FindingCategory.HISTORICAL_ANOMALY,
    "extraction-confidence": FindingCategory.LOW_CONFIDENCE,
}


def aggregate_score(results: Iterable[ValidationResult], penalties: dict[str, float]) -> float:
    """Product of ``1 - penalty(severity)`` over failed results; 1.0 when nothing failed."""
    return ValidationReport(results=tuple(results), penalties=penalties).score


def _check_settings(settings: ValidationSettings) -> None:
    unknown = [rule for rule in settings.enabled_rules if rule not in RULES]
    if unknown:
        raise ValidationConfigError(f"Unknown validation rules enabled: {unknown}")
    if settings.anomaly_critical_z <= settings.anomaly_warn_z:
        raise ValidationConfigError("anomaly_critical_z must be greater than anomaly_warn_z")
    for level in SEVERITY_LEVELS:
        penalty = settings.severity_penalties.get(level)
        if penalty is None or not 0.0 <= penalty <= 1.0:
            raise ValidationConfigError(f"Severity penalty for {level!r} must be within [0, 1]")


class ValidationEngine:
    """Pure, deterministic evaluation of the configured rules.

    Construction fails with ``ValidationConfigError`` when the rule set is
    malformed. ``validate`` never raises for a misbehaving rule: that rule
    yields a critical ``rule_execution_error`` finding and the pass continues.
    """

    def __init__(self, settings: ValidationSettings) -> None:
        _check_settings(settings)
        self.settings = settings
        self._order = [rule_id for rule_id in RULES if rule_id in set(settings.enabled_rules)]

    def validate(
        self,
        record: CanonicalInvoiceRecord,
        history: Optional[HistoricalContext] = None,
    ) -> ValidationReport:
        history = history or HistoricalContext(unit_id=record.unit_id)
        failed: list[tuple[int, int, ValidationResult]] = []
        passed: list[ValidationResult] = []
        skipped: list[str] = []

        for position, rule_id in enumerate(self._order):
            try:
                produced = RULES[rule_id](record, history, self.settings)
            except Exception as exc:
                logger.exception("Validation rule %s raised for record=%s", rule_id, record.id)
                produced = [
                    ValidationResult(
                        rule_id=rule_id,
                        category=_RULE_CATEGORIES.get(rule_id, FindingCategory.OUT_OF_RANGE),
                        error_type="rule_execution_error",
                        severity=Severity.CRITICAL,
                        message=f"Rule {rule_id} could not be evaluated: {type(exc).__name__}: {exc}",
                    )
                ]
            if not produced:
                skipped.append(rule_id)
            for index, result in enumerate(produced):
                if result.passed:
                    passed.append(result)
                else:
                    failed.append((position, index, result))

        failed.sort(key=lambda item: (-item[2].severity.rank, item[0], item[1]))
        ordered = tuple(result for _, _, result in failed) + tuple(passed)
        return ValidationReport(
            results=ordered,
            penalties=self.settings.severity_penalties,
            skipped_rules=tuple(skipped),
        )
