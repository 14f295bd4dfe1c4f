"""Pipeline run state machine and the runner that drives a document through it."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from invoice_pipeline.core.config import PipelineConfig, get_pipeline_config
from invoice_pipeline.errors import HistoricalContextUnavailable, InvalidTransitionError, ValidationConfigError
from invoice_pipeline.schemas.invoice import CanonicalInvoiceRecord, PipelineStatus, ValidationReport, ValidationResult

from .audit import ACTOR_REVIEWER, ACTOR_SYSTEM, AuditEvent
from .decision import Decision, decide
from .extraction.orchestrator import EngineOrchestrator, ExtractionOutcome
from .learning_feed import AnomalyPrediction, LearningFeed, ValidationPrediction
from .notification_outbox import NotificationSink
from .record_store import RunView, SqlRecordStore
from .validation.engine import ValidationEngine
from .validation.history import HistoricalContext, load_historical_context

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS = {
    PipelineStatus.RECEIVED: [PipelineStatus.EXTRACTING],
    PipelineStatus.EXTRACTING: [PipelineStatus.EXTRACTED, PipelineStatus.EXTRACTION_FAILED],
    PipelineStatus.EXTRACTED: [PipelineStatus.VALIDATING],
    PipelineStatus.VALIDATING: [PipelineStatus.VALIDATED, PipelineStatus.VALIDATION_FAILED],
    PipelineStatus.VALIDATED: [
        PipelineStatus.APPROVED,
        PipelineStatus.REVIEW_REQUIRED,
        PipelineStatus.REJECTED,
    ],
    PipelineStatus.APPROVED: [PipelineStatus.CLOSED],
    PipelineStatus.REJECTED: [PipelineStatus.CLOSED],
    PipelineStatus.REVIEW_REQUIRED: [PipelineStatus.APPROVED, PipelineStatus.REJECTED],
    PipelineStatus.CLOSED: [],
    PipelineStatus.EXTRACTION_FAILED: [],
    PipelineStatus.VALIDATION_FAILED: [],
}

# States at which a run stops and gets persisted.
RESTING_STATES = frozenset(
    {
        PipelineStatus.CLOSED,
        PipelineStatus.REVIEW_REQUIRED,
        PipelineStatus.EXTRACTION_FAILED,
        PipelineStatus.VALIDATION_FAILED,
    }
)


def _is_allowed_actor(current: PipelineStatus, new: PipelineStatus, actor_type: str) -> bool:
    if current == PipelineStatus.REVIEW_REQUIRED:
        return actor_type == ACTOR_REVIEWER
    if new == PipelineStatus.CLOSED:
        return actor_type in {ACTOR_SYSTEM, ACTOR_REVIEWER}
    return actor_type == ACTOR_SYSTEM


def check_transition(current: PipelineStatus, new: PipelineStatus, actor_type: str) -> None:
    if new not in ALLOWED_TRANSITIONS.get(current, []) or not _is_allowed_actor(current, new, actor_type):
        raise InvalidTransitionError(current.value, new.value)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


@dataclass
class PipelineRun:
    document_locator: str
    config: PipelineConfig
    idempotency_key: Optional[str] = None
    id: uuid.UUID = field(default_factory=uuid.uuid4)
    status: PipelineStatus = PipelineStatus.RECEIVED
    created_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None
    outcome: Optional[ExtractionOutcome] = None
    record: Optional[CanonicalInvoiceRecord] = None
    history: Optional[HistoricalContext] = None
    report: Optional[ValidationReport] = None
    validation_prediction: Optional[ValidationPrediction] = None
    anomaly_prediction: Optional[AnomalyPrediction] = None
    decision: Optional[Decision] = None
    failure_kind: Optional[str] = None
    failure_engine: Optional[str] = None
    failure_message: Optional[str] = None
    audit: list[AuditEvent] = field(default_factory=list)
    stored_run_id: Optional[uuid.UUID] = None

    @property
    def disposition(self) -> Optional[str]:
        return self.decision.status.value if self.decision is not None else None

    @property
    def operator_action_required(self) -> bool:
        return self.outcome is not None and self.outcome.operator_action_required

    @property
    def audit_actions(self) -> list[str]:
        return [event.action for event in self.audit]

    def summary(self) -> dict[str, Any]:
        return {
            "document_locator": self.document_locator,
            "record_id": str(self.record.id) if self.record is not None else None,
            "unit_id": self.record.unit_id if self.record is not None else None,
            "reference_month": self.record.fields.reference_month if self.record is not None else None,
            "extraction_method": self.record.extraction_method if self.record is not None else None,
            "validation_score": self.report.score if self.report is not None else None,
            "reasons": list(self.decision.reasons) if self.decision is not None else [],
            "failure_kind": self.failure_kind,
            "operator_action_required": self.operator_action_required,
        }


def apply_transition(
    run: PipelineRun,
    new_status: PipelineStatus,
    *,
    actor_type: str = ACTOR_SYSTEM,
    actor_id: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> bool:
    current = run.status
    if new_status == current:
        return False
    check_transition(current, new_status, actor_type)

    run.status = new_status
    if new_status in RESTING_STATES:
        run.finished_at = _now()
    run.audit.append(
        AuditEvent(
            action="STATUS_CHANGE",
            actor_type=actor_type,
            actor_id=actor_id,
            old_value={"status": current.value},
            new_value={"status": new_status.value},
            metadata=metadata,
        )
    )
    logger.debug("Run %s %s -> %s", run.id, current.value, new_status.value)
    return True


def stage_budgets(config: PipelineConfig) -> tuple[float, float, float]:
    """Extraction, validation and overall time budgets in seconds."""
    o = config.orchestration
    per_engine = (1 + o.max_retries) * o.engine_timeout_seconds + o.retry_backoff_seconds * (2**o.max_retries - 1)
    extraction = (1 + o.max_fallback_depth) * per_engine
    validation = o.validation_timeout_seconds
    return extraction, validation, extraction + validation + o.run_budget_margin_seconds


class PipelineRunner:
    def __init__(
        self,
        store: SqlRecordStore,
        orchestrator: EngineOrchestrator,
        *,
        notifier: Optional[NotificationSink] = None,
        learning_feed: Optional[LearningFeed] = None,
        config_provider: Callable[[], PipelineConfig] = get_pipeline_config,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._notifier = notifier
        self._learning_feed = learning_feed
        self._config_provider = config_provider

    async def execute(
        self,
        document_locator: str,
        *,
        idempotency_key: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> PipelineRun:
        """Run one document to a resting state and persist it.

        Nothing is persisted when the calling task is cancelled.
        """
        run = PipelineRun(document_locator=document_locator, config=self._config_provider(), idempotency_key=idempotency_key)
        run.audit.append(
            AuditEvent(
                action="RUN_RECEIVED",
                actor_id=actor_id,
                new_value={"document_locator": document_locator, "idempotency_key": idempotency_key},
                metadata={"engines": [e.name for e in run.config.enabled_engines()]},
            )
        )
        extraction_budget, validation_budget, overall_budget = stage_budgets(run.config)

        try:
            await asyncio.wait_for(self._run_stages(run, extraction_budget, validation_budget), timeout=overall_budget)
        except asyncio.TimeoutError:
            self._fail_on_overrun(run, overall_budget)
        except asyncio.CancelledError:
            logger.warning("Run %s cancelled at status=%s; nothing persisted", run.id, run.status.value)
            raise

        run.stored_run_id = await asyncio.to_thread(self._store.save_run, run)
        if run.stored_run_id != run.id:
            logger.info("Run %s duplicates stored run %s (idempotency_key=%s)", run.id, run.stored_run_id, idempotency_key)
            return run

        logger.info(
            "Run %s finished status=%s disposition=%s score=%s",
            run.id,
            run.status.value,
            run.disposition,
            run.report.score if run.report is not None else None,
        )
        await self._announce(run)
        return run

    # --- stages ---

    async def _run_stages(self, run: PipelineRun, extraction_budget: float, validation_budget: float) -> None:
        apply_transition(run, PipelineStatus.EXTRACTING)
        try:
            outcome = await asyncio.wait_for(
                self._orchestrator.orchestrate(run.document_locator, run.config), timeout=extraction_budget
            )
        except asyncio.TimeoutError:
            self._fail(
                run,
                PipelineStatus.EXTRACTION_FAILED,
                kind="timeout",
                message=f"extraction exceeded its {extraction_budget:.1f}s budget",
            )
            return

        run.outcome = outcome
        for attempt in outcome.attempts:
            run.audit.append(AuditEvent(action="ENGINE_ATTEMPT", metadata=attempt.as_audit()))
        if outcome.ab_trial is not None:
            run.audit.append(AuditEvent(action="AB_TRIAL", metadata=outcome.ab_trial.as_audit()))

        if not outcome.succeeded:
            if outcome.operator_action_required:
                logger.error(
                    "Engine %s rejected its credentials; operator action required (run=%s)",
                    outcome.failure_engine,
                    run.id,
                )
                run.audit.append(
                    AuditEvent(
                        action="ENGINE_CREDENTIALS_REJECTED",
                        metadata={"engine": outcome.failure_engine, "message": outcome.failure_message},
                    )
                )
            self._fail(
                run,
                PipelineStatus.EXTRACTION_FAILED,
                kind=outcome.failure_kind or "permanent",
                engine=outcome.failure_engine,
                message=outcome.failure_message,
            )
            return

        run.record = outcome.record
        apply_transition(run, PipelineStatus.EXTRACTED, metadata=run.record.audit_summary())
        apply_transition(run, PipelineStatus.VALIDATING)

        try:
            engine = ValidationEngine(run.config.validation)
        except ValidationConfigError as exc:
            self._fail(run, PipelineStatus.VALIDATION_FAILED, kind="configuration", message=str(exc))
            return
        try:
            await asyncio.wait_for(self._validate(run, engine), timeout=validation_budget)
        except asyncio.TimeoutError:
            self._fail(
                run,
                PipelineStatus.VALIDATION_FAILED,
                kind="timeout",
                message=f"validation exceeded its {validation_budget:.1f}s budget",
            )
            return

        report = run.report
        for finding in report.findings:
            if finding.error_type == "rule_execution_error":
                run.audit.append(AuditEvent(action="RULE_EXECUTION_ERROR", metadata={"rule_id": finding.rule_id, "message": finding.message}))
        apply_transition(
            run,
            PipelineStatus.VALIDATED,
            metadata={
                "score": report.score,
                "skipped_rules": list(report.skipped_rules),
                "findings": [
                    {"rule_id": f.rule_id, "field": f.field, "severity": f.severity.value, "error_type": f.error_type}
                    for f in report.findings
                ],
            },
        )

        decision = decide(
            report,
            run.record.confidence,
            run.config,
            validation_prediction=run.validation_prediction,
            anomaly_prediction=run.anomaly_prediction,
        )
        run.decision = decision
        apply_transition(
            run,
            decision.status,
            metadata={"reasons": list(decision.reasons), "prediction_applied": decision.prediction_applied},
        )
        if decision.status in (PipelineStatus.APPROVED, PipelineStatus.REJECTED):
            apply_transition(run, PipelineStatus.CLOSED)

    async def _validate(self, run: PipelineRun, engine: ValidationEngine) -> None:
        run.history = await self._load_history(run)
        run.report = await asyncio.to_thread(engine.validate, run.record, run.history)
        if self._learning_feed is None:
            return
        try:
            run.validation_prediction, run.anomaly_prediction = await asyncio.to_thread(
                self._learning_feed.predict, run.record, run.history
            )
        except Exception as exc:
            logger.exception("Prediction unavailable for run %s", run.id)
            run.audit.append(AuditEvent(action="PREDICTION_UNAVAILABLE", metadata={"error": str(exc)}))
            return
        run.audit.append(
            AuditEvent(
                action="PREDICTION",
                metadata={
                    "model_version": run.validation_prediction.model_version,
                    "approve_probability": run.validation_prediction.approve_probability,
                    "anomaly_probability": run.anomaly_prediction.anomaly_probability,
                },
            )
        )

    async def _load_history(self, run: PipelineRun) -> HistoricalContext:
        unit_id = run.record.unit_id
        if not unit_id:
            return HistoricalContext(unit_id=None)
        try:
            return await asyncio.to_thread(
                load_historical_context, self._store, unit_id, limit=run.config.validation.historical_limit
            )
        except HistoricalContextUnavailable as exc:
            logger.warning("Historical context unavailable for unit=%s: %s", unit_id, exc)
            run.audit.append(AuditEvent(action="HISTORY_UNAVAILABLE", metadata={"unit_id": unit_id, "error": str(exc)}))
            return HistoricalContext.unavailable(unit_id)

    def _fail(
        self,
        run: PipelineRun,
        status: PipelineStatus,
        *,
        kind: str,
        message: str,
        engine: Optional[str] = None,
    ) -> None:
        run.failure_kind = kind
        run.failure_engine = engine
        run.failure_message = message
        metadata = {"kind": kind, "engine": engine, "message": message}
        apply_transition(run, status, metadata=metadata)
        run.audit.append(AuditEvent(action=status.value.upper(), metadata=metadata))
        logger.warning("Run %s %s kind=%s engine=%s: %s", run.id, status.value, kind, engine, message)

    def _fail_on_overrun(self, run: PipelineRun, budget: float) -> None:
        message = f"run exceeded its {budget:.1f}s budget"
        if run.status == PipelineStatus.EXTRACTING:
            self._fail(run, PipelineStatus.EXTRACTION_FAILED, kind="timeout", message=message)
            return
        if run.status == PipelineStatus.EXTRACTED:
            apply_transition(run, PipelineStatus.VALIDATING)
        if run.status == PipelineStatus.VALIDATING:
            self._fail(run, PipelineStatus.VALIDATION_FAILED, kind="timeout", message=message)
            return
        logger.error("Run %s overran its budget at status=%s", run.id, run.status.value)

    async def _announce(self, run: PipelineRun) -> None:
        if self._notifier is not None:
            try:
                await asyncio.to_thread(
                    self._notifier.notify, run.id, run.disposition or run.status.value, run.summary()
                )
            except Exception:
                logger.exception("Notification enqueue failed for run %s", run.id)
        if (
            self._learning_feed is not None
            and run.decision is not None
            and run.decision.status in (PipelineStatus.APPROVED, PipelineStatus.REJECTED)
        ):
            self._learning_feed.submit(
                run_id=run.id,
                record=run.record,
                report=run.report,
                decision=run.decision.status.value,
                source="automated",
            )

    # --- human review ---

    async def apply_review_decision(
        self,
        run_id: uuid.UUID,
        *,
        decision: str,
        actor_id: str,
        corrections: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> RunView:
        """Reviewer override for a run waiting at ``review_required``.

        Corrections produce a new record that supersedes the extracted one.
        """
        target = PipelineStatus(decision)
        view = await asyncio.to_thread(self._store.get_run, run_id)
        current = PipelineStatus(view.status)
        check_transition(current, target, ACTOR_REVIEWER)
        check_transition(target, PipelineStatus.CLOSED, ACTOR_REVIEWER)

        record = await asyncio.to_thread(self._store.load_record, view.record_id) if view.record_id else None
        corrected = record.corrected(corrections, actor_id=actor_id) if corrections and record is not None else None
        evidence = None
        if self._learning_feed is not None and record is not None:
            evidence = await self._review_evidence(view, corrected)

        events = [
            AuditEvent(
                action="REVIEW_DECISION",
                actor_type=ACTOR_REVIEWER,
                actor_id=actor_id,
                old_value={"status": current.value},
                new_value={"status": target.value},
                metadata={"reason": reason, "corrected_fields": sorted(corrections or {})},
            )
        ]
        if corrected is not None:
            events.append(
                AuditEvent(
                    action="RECORD_CORRECTED",
                    actor_type=ACTOR_REVIEWER,
                    actor_id=actor_id,
                    old_value={name: _jsonable(record.value(name)) for name in corrections},
                    new_value={name: _jsonable(corrected.value(name)) for name in corrections},
                    metadata={"record_id": str(corrected.id), "supersedes_id": str(record.id)},
                )
            )
        events.append(
            AuditEvent(
                action="STATUS_CHANGE",
                actor_type=ACTOR_REVIEWER,
                actor_id=actor_id,
                old_value={"status": target.value},
                new_value={"status": PipelineStatus.CLOSED.value},
            )
        )

        await asyncio.to_thread(
            self._store.apply_review,
            run_id,
            disposition=target,
            final_status=PipelineStatus.CLOSED,
            corrected=corrected,
            events=events,
        )
        logger.info("Run %s reviewed by %s: %s (corrected=%s)", run_id, actor_id, target.value, corrected is not None)

        final_record = corrected or record
        if self._notifier is not None:
            try:
                await asyncio.to_thread(
                    self._notifier.notify,
                    run_id,
                    target.value,
                    {"reviewed_by": actor_id, "record_id": str(final_record.id) if final_record else None},
                )
            except Exception:
                logger.exception("Notification enqueue failed for run %s", run_id)
        if self._learning_feed is not None and final_record is not None:
            self._learning_feed.submit(
                run_id=run_id,
                record=final_record,
                report=evidence,
                decision=target.value,
                source="human",
            )
        return await asyncio.to_thread(self._store.get_run, run_id)

    async def _review_evidence(
        self, view: RunView, corrected: Optional[CanonicalInvoiceRecord]
    ) -> ValidationReport:
        """Findings that go with a human label.

        An unchanged record keeps the findings the reviewer saw. A correction is
        validated again against the unit's history, read before the corrected
        record itself becomes part of it.
        """
        config = self._config_provider()
        if corrected is None:
            return ValidationReport(
                results=tuple(ValidationResult.model_validate(f) for f in view.findings),
                penalties=config.validation.severity_penalties,
            )
        try:
            history = await asyncio.to_thread(
                load_historical_context, self._store, corrected.unit_id, limit=config.validation.historical_limit
            )
        except HistoricalContextUnavailable as exc:
            logger.warning("Historical context unavailable for unit=%s: %s", corrected.unit_id, exc)
            history = HistoricalContext.unavailable(corrected.unit_id)
        return await asyncio.to_thread(ValidationEngine(config.validation).validate, corrected, history)
