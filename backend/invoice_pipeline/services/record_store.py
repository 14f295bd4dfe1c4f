"""Durable storage of records, runs, findings and audit trails (SQLAlchemy)."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from invoice_pipeline.errors import InvalidTransitionError, RunNotFoundError
from invoice_pipeline.models.invoice import AuditLog, InvoiceRecordRow, PipelineRunRow, ValidationFindingRow
from invoice_pipeline.schemas.invoice import (
    CanonicalInvoiceRecord,
    FieldProvenance,
    InvoiceFields,
    PipelineStatus,
)

from .audit import AuditEvent, create_audit_log

if TYPE_CHECKING:
    from .pipeline_runs import PipelineRun

logger = logging.getLogger(__name__)

RUN_ENTITY = "pipeline_run"
# scan window when looking for enough values of one field
_HISTORY_SCAN_FACTOR = 4


@dataclass(frozen=True)
class RunView:
    id: uuid.UUID
    document_locator: str
    status: str
    disposition: Optional[str]
    idempotency_key: Optional[str]
    record_id: Optional[uuid.UUID]
    corrected_record_id: Optional[uuid.UUID]
    failure_kind: Optional[str]
    failure_engine: Optional[str]
    failure_message: Optional[str]
    operator_action_required: bool
    validation_score: Optional[float]
    decision_reasons: list[str]
    engine_attempts: list[dict[str, Any]]
    created_at: Optional[datetime]
    finished_at: Optional[datetime]
    record: Optional[dict[str, Any]] = None
    findings: list[dict[str, Any]] = field(default_factory=list)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_to_row(record: CanonicalInvoiceRecord, *, disposition: str) -> InvoiceRecordRow:
    return InvoiceRecordRow(
        id=record.id,
        document_locator=record.document_locator,
        unit_id=record.unit_id,
        reference_month=record.fields.reference_month,
        disposition=disposition,
        fields_json=record.fields.model_dump(mode="json", by_alias=True, exclude_none=True),
        provenance_json={name: prov.model_dump(mode="json") for name, prov in record.provenance.items()},
        confidence=record.confidence,
        extraction_method=record.extraction_method,
        supersedes_id=record.supersedes_id,
        corrected_by=record.corrected_by,
        ingested_at=record.ingested_at,
    )


def row_to_record(row: InvoiceRecordRow) -> CanonicalInvoiceRecord:
    return CanonicalInvoiceRecord(
        id=row.id,
        document_locator=row.document_locator,
        ingested_at=row.ingested_at,
        fields=InvoiceFields.model_validate(row.fields_json or {}),
        provenance={name: FieldProvenance(**prov) for name, prov in (row.provenance_json or {}).items()},
        extraction_method=row.extraction_method or "",
        supersedes_id=row.supersedes_id,
        corrected_by=row.corrected_by,
    )


def _historical_value(fields_json: dict[str, Any], name: str) -> Optional[float]:
    if name == "cost_per_kwh":
        total = fields_json.get("total_r$")
        energy = fields_json.get("energy_kwh")
        if total is None or not energy:
            return None
        return float(total) / float(energy)
    value = fields_json.get(name)
    return float(value) if isinstance(value, (int, float)) else None


class SqlRecordStore:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    # --- records ---

    def save(
        self,
        record: CanonicalInvoiceRecord,
        *,
        idempotency_key: Optional[str] = None,
        disposition: str = PipelineStatus.REVIEW_REQUIRED.value,
    ) -> uuid.UUID:
        """Store a standalone record. Saving the same record twice is a no-op."""
        db = self._session_factory()
        try:
            existing = db.get(InvoiceRecordRow, record.id)
            if existing is not None:
                return existing.id
            db.add(record_to_row(record, disposition=disposition))
            db.commit()
            return record.id
        finally:
            db.close()

    def load_record(self, record_id: uuid.UUID) -> CanonicalInvoiceRecord:
        db = self._session_factory()
        try:
            row = db.get(InvoiceRecordRow, record_id)
            if row is None:
                raise RunNotFoundError(f"Record {record_id} not found")
            return row_to_record(row)
        finally:
            db.close()

    def get_historical(self, unit_id: str, field: str, limit: int) -> list[float]:
        """Newest-first values of *field* from the unit's approved invoices."""
        db = self._session_factory()
        try:
            rows = (
                db.execute(
                    select(InvoiceRecordRow.fields_json)
                    .where(
                        InvoiceRecordRow.unit_id == unit_id,
                        InvoiceRecordRow.disposition == PipelineStatus.APPROVED.value,
                    )
                    .order_by(InvoiceRecordRow.reference_month.desc(), InvoiceRecordRow.created_at.desc())
                    .limit(limit * _HISTORY_SCAN_FACTOR)
                )
                .scalars()
                .all()
            )
        finally:
            db.close()
        values: list[float] = []
        for fields_json in rows:
            value = _historical_value(fields_json or {}, field)
            if value is not None:
                values.append(value)
            if len(values) >= limit:
                break
        return values

    # --- runs ---

    def find_run_id(self, idempotency_key: str) -> Optional[uuid.UUID]:
        db = self._session_factory()
        try:
            return db.execute(
                select(PipelineRunRow.id).where(PipelineRunRow.idempotency_key == idempotency_key)
            ).scalar_one_or_none()
        finally:
            db.close()

    def save_run(self, run: "PipelineRun") -> uuid.UUID:
        """Write the run, its record, findings and audit trail in one transaction.

        Returns the id of the stored run; with a repeated idempotency key that is
        the id of the run stored first, and nothing new is written.
        """
        db = self._session_factory()
        try:
            if run.idempotency_key:
                existing = db.execute(
                    select(PipelineRunRow.id).where(PipelineRunRow.idempotency_key == run.idempotency_key)
                ).scalar_one_or_none()
                if existing is not None:
                    logger.info("Run with idempotency_key=%s already stored as %s", run.idempotency_key, existing)
                    return existing

            if run.record is not None:
                db.add(record_to_row(run.record, disposition=run.disposition or PipelineStatus.REVIEW_REQUIRED.value))
                db.flush()

            db.add(
                PipelineRunRow(
                    id=run.id,
                    document_locator=run.document_locator,
                    idempotency_key=run.idempotency_key,
                    status=run.status.value,
                    disposition=run.disposition,
                    record_id=run.record.id if run.record is not None else None,
                    failure_kind=run.failure_kind,
                    failure_engine=run.failure_engine,
                    failure_message=run.failure_message,
                    operator_action_required=run.operator_action_required,
                    validation_score=run.report.score if run.report is not None else None,
                    decision_reasons=list(run.decision.reasons) if run.decision is not None else [],
                    engine_attempts=[a.as_audit() for a in run.outcome.attempts] if run.outcome is not None else [],
                    config_snapshot=run.config.model_dump(mode="json"),
                    created_at=run.created_at,
                    finished_at=run.finished_at,
                )
            )
            db.flush()

            if run.report is not None and run.record is not None:
                for position, result in enumerate(run.report.results):
                    db.add(
                        ValidationFindingRow(
                            run_id=run.id,
                            record_id=run.record.id,
                            position=position,
                            rule_id=result.rule_id,
                            field=result.field,
                            category=result.category.value,
                            error_type=result.error_type,
                            severity=result.severity.value,
                            message=result.message,
                            passed=result.passed,
                            anomaly_score=result.anomaly_score,
                            suggested_fix=result.suggested_fix,
                            historical_context=result.historical_context,
                        )
                    )

            for sequence, event in enumerate(run.audit):
                create_audit_log(db, entity_type=RUN_ENTITY, entity_id=str(run.id), event=event, sequence=sequence)

            db.commit()
            return run.id
        except IntegrityError:
            db.rollback()
            if run.idempotency_key:
                existing = self.find_run_id(run.idempotency_key)
                if existing is not None:
                    return existing
            raise
        finally:
            db.close()

    def get_run(self, run_id: uuid.UUID) -> RunView:
        db = self._session_factory()
        try:
            row = db.get(PipelineRunRow, run_id)
            if row is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            record_id = row.corrected_record_id or row.record_id
            record_row = db.get(InvoiceRecordRow, record_id) if record_id else None
            findings = (
                db.execute(
                    select(ValidationFindingRow)
                    .where(ValidationFindingRow.run_id == run_id)
                    .order_by(ValidationFindingRow.position.asc())
                )
                .scalars()
                .all()
            )
            record = None
            if record_row is not None:
                record = {
                    "id": str(record_row.id),
                    "fields": record_row.fields_json,
                    "provenance": record_row.provenance_json,
                    "confidence": record_row.confidence,
                    "extraction_method": record_row.extraction_method,
                    "supersedes_id": str(record_row.supersedes_id) if record_row.supersedes_id else None,
                }
            return RunView(
                id=row.id,
                document_locator=row.document_locator,
                status=row.status,
                disposition=row.disposition,
                idempotency_key=row.idempotency_key,
                record_id=row.record_id,
                corrected_record_id=row.corrected_record_id,
                failure_kind=row.failure_kind,
                failure_engine=row.failure_engine,
                failure_message=row.failure_message,
                operator_action_required=bool(row.operator_action_required),
                validation_score=row.validation_score,
                decision_reasons=list(row.decision_reasons or []),
                engine_attempts=list(row.engine_attempts or []),
                created_at=row.created_at,
                finished_at=row.finished_at,
                record=record,
                findings=[
                    {
                        "rule_id": f.rule_id,
                        "field": f.field,
                        "category": f.category,
                        "error_type": f.error_type,
                        "severity": f.severity,
                        "message": f.message,
                        "passed": bool(f.passed),
                        "anomaly_score": f.anomaly_score,
                        "suggested_fix": f.suggested_fix,
                        "historical_context": f.historical_context,
                    }
                    for f in findings
                ],
            )
        finally:
            db.close()

    # --- audit ---

    def _next_sequence(self, db: Session, run_id: uuid.UUID) -> int:
        current = db.execute(
            select(func.max(AuditLog.sequence)).where(
                AuditLog.entity_type == RUN_ENTITY,
                AuditLog.entity_id == run_id,
            )
        ).scalar_one_or_none()
        return 0 if current is None else int(current) + 1

    def append_audit(self, run_id: uuid.UUID, event: AuditEvent) -> None:
        db = self._session_factory()
        try:
            create_audit_log(
                db, entity_type=RUN_ENTITY, entity_id=str(run_id), event=event, sequence=self._next_sequence(db, run_id)
            )
            db.commit()
        finally:
            db.close()

    def list_audit(self, run_id: uuid.UUID) -> list[dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.execute(
                    select(AuditLog)
                    .where(AuditLog.entity_type == RUN_ENTITY, AuditLog.entity_id == run_id)
                    .order_by(AuditLog.sequence.asc())
                )
                .scalars()
                .all()
            )
            return [
                {
                    "sequence": row.sequence,
                    "action": row.action,
                    "actor_type": row.actor_type,
                    "actor_id": row.actor_id,
                    "old_value": row.old_value,
                    "new_value": row.new_value,
                    "metadata": row.audit_meta,
                    "timestamp": row.timestamp.isoformat() if row.timestamp else None,
                }
                for row in rows
            ]
        finally:
            db.close()

    # --- human review ---

    def apply_review(
        self,
        run_id: uuid.UUID,
        *,
        disposition: PipelineStatus,
        final_status: PipelineStatus,
        corrected: Optional[CanonicalInvoiceRecord],
        events: list[AuditEvent],
    ) -> None:
        db = self._session_factory()
        try:
            row = db.get(PipelineRunRow, run_id, with_for_update=True)
            if row is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if row.status != PipelineStatus.REVIEW_REQUIRED.value:
                raise InvalidTransitionError(row.status, disposition.value)

            original = db.get(InvoiceRecordRow, row.record_id) if row.record_id else None
            if corrected is not None:
                db.add(record_to_row(corrected, disposition=disposition.value))
                db.flush()
                row.corrected_record_id = corrected.id
                if original is not None:
                    original.disposition = "superseded"
            elif original is not None:
                original.disposition = disposition.value

            row.status = final_status.value
            row.disposition = disposition.value
            row.finished_at = _now()

            sequence = self._next_sequence(db, run_id)
            for offset, event in enumerate(events):
                create_audit_log(db, entity_type=RUN_ENTITY, entity_id=str(run_id), event=event, sequence=sequence + offset)
            db.commit()
        finally:
            db.close()
