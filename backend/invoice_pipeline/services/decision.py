"""Turns a validation report (plus optional advisory predictions) into a disposition."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from invoice_pipeline.core.config import PipelineConfig
from invoice_pipeline.schemas.invoice import PipelineStatus, Severity, ValidationReport
from invoice_pipeline.services.learning_feed import AnomalyPrediction, ValidationPrediction


@dataclass(frozen=True)
class Decision:
    status: PipelineStatus
    reasons: tuple[str, ...] = field(default_factory=tuple)
    prediction_applied: bool = False


def decide(
    report: ValidationReport,
    record_confidence: float,
    config: PipelineConfig,
    *,
    validation_prediction: Optional[ValidationPrediction] = None,
    anomaly_prediction: Optional[AnomalyPrediction] = None,
) -> Decision:
    """Rules decide; predictions can only move an approval to review.

    * any critical finding -> rejected
    * score below the review threshold, any error finding, or confidence
      below the confidence threshold -> review_required
    * otherwise -> approved
    """
    thresholds = config.validation
    findings = report.findings

    critical = [f for f in findings if f.severity == Severity.CRITICAL]
    if critical:
        return Decision(
            PipelineStatus.REJECTED,
            tuple(f"critical finding {f.rule_id}: {f.message}" for f in critical),
        )

    reasons: list[str] = []
    if report.score < thresholds.review_score_threshold:
        reasons.append(f"validation score {report.score:.3f} below {thresholds.review_score_threshold:.3f}")
    for finding in findings:
        if finding.severity == Severity.ERROR:
            reasons.append(f"error finding {finding.rule_id}: {finding.message}")
    if record_confidence < thresholds.confidence_threshold:
        reasons.append(f"extraction confidence {record_confidence:.3f} below {thresholds.confidence_threshold:.3f}")
    if reasons:
        return Decision(PipelineStatus.REVIEW_REQUIRED, tuple(reasons))

    limit = config.decision.prediction_disagreement_threshold
    if validation_prediction is not None and validation_prediction.reject_probability >= limit:
        return Decision(
            PipelineStatus.REVIEW_REQUIRED,
            (
                f"model {validation_prediction.model_version} predicts rejection "
                f"(p={validation_prediction.reject_probability:.3f})",
            ),
            prediction_applied=True,
        )
    if anomaly_prediction is not None and anomaly_prediction.anomaly_probability >= limit:
        return Decision(
            PipelineStatus.REVIEW_REQUIRED,
            (
                f"model {anomaly_prediction.model_version} predicts an anomaly "
                f"(p={anomaly_prediction.anomaly_probability:.3f})",
            ),
            prediction_applied=True,
        )

    return Decision(PipelineStatus.APPROVED, ("all rules passed",))
