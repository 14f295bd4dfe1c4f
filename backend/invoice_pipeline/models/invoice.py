import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")


class InvoiceRecordRow(Base):
    __tablename__ = "invoice_records"
    __table_args__ = (Index("idx_invoice_records_unit_month", "unit_id", "reference_month"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    document_locator = Column(Text, nullable=False)
    unit_id = Column(String(64), index=True)
    reference_month = Column(String(7))
    # approved / review_required / rejected; rejected records never feed history
    disposition = Column(String(32), nullable=False, default="review_required")
    fields_json = Column(JSON_TYPE, nullable=False)
    provenance_json = Column(JSON_TYPE, nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    extraction_method = Column(String(128), nullable=False, default="")
    supersedes_id = Column(UUID_TYPE, ForeignKey("invoice_records.id"), nullable=True)
    corrected_by = Column(String(128))
    ingested_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PipelineRunRow(Base):
    __tablename__ = "pipeline_runs"
    __table_args__ = (
        UniqueConstraint("idempotency_key", name="uniq_pipeline_runs_idempotency_key"),
        Index("idx_pipeline_runs_status", "status"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    document_locator = Column(Text, nullable=False)
    idempotency_key = Column(String(128), nullable=True)
    status = Column(String(32), nullable=False)
    # approved / review_required / rejected; kept after the run is closed
    disposition = Column(String(32))
    record_id = Column(UUID_TYPE, ForeignKey("invoice_records.id"), nullable=True)
    corrected_record_id = Column(UUID_TYPE, ForeignKey("invoice_records.id"), nullable=True)
    failure_kind = Column(String(32))
    failure_engine = Column(String(64))
    failure_message = Column(Text)
    operator_action_required = Column(Boolean, nullable=False, default=False)
    validation_score = Column(Float)
    decision_reasons = Column(JSON_TYPE)
    engine_attempts = Column(JSON_TYPE)
    config_snapshot = Column(JSON_TYPE)
    created_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True))
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class ValidationFindingRow(Base):
    __tablename__ = "validation_findings"
    __table_args__ = (Index("idx_validation_findings_run", "run_id", "position"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID_TYPE, ForeignKey("pipeline_runs.id"), nullable=False)
    record_id = Column(UUID_TYPE, ForeignKey("invoice_records.id"), nullable=False)
    position = Column(Integer, nullable=False)
    rule_id = Column(String(64), nullable=False)
    field = Column(String(64))
    category = Column(String(32), nullable=False)
    error_type = Column(String(64), nullable=False)
    severity = Column(String(16), nullable=False)
    message = Column(Text, nullable=False)
    passed = Column(Boolean, nullable=False, default=False)
    anomaly_score = Column(Float)
    suggested_fix = Column(Text)
    historical_context = Column(JSON_TYPE)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id", "sequence"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    sequence = Column(Integer, nullable=False, default=0)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(String(128))
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uniq_notification_outbox_dedupe_key"),
        Index("idx_notification_outbox_status_next", "status", "next_attempt_at"),
    )

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    entity_type = Column(String(64), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)

    channel = Column(String(32), nullable=False)  # webhook / log
    template_key = Column(String(64), nullable=False)
    payload_json = Column(JSON_TYPE, nullable=False)
    dedupe_key = Column(String(160), nullable=False)

    status = Column(String(16), nullable=False, default="PENDING")
    attempt_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    sent_at = Column(DateTime(timezone=True))
    last_error = Column(Text)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class LearningSample(Base):
    __tablename__ = "learning_samples"
    __table_args__ = (Index("idx_learning_samples_unit", "unit_id", "created_at"),)

    id = Column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    run_id = Column(UUID_TYPE, nullable=False)
    record_id = Column(UUID_TYPE, nullable=False)
    unit_id = Column(String(64))
    source = Column(String(16), nullable=False)  # automated / human
    decision = Column(String(32), nullable=False)
    features = Column(JSON_TYPE, nullable=False)
    results = Column(JSON_TYPE, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
