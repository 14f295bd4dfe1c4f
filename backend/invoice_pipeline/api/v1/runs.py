import logging
import uuid
from datetime import datetime
from functools import lru_cache
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, Field

from invoice_pipeline.core.config import get_settings, reload_pipeline_config
from invoice_pipeline.core.dependencies import SessionLocal
from invoice_pipeline.core.storage import ObjectStore, ObjectStoreError, get_object_store
from invoice_pipeline.errors import InvalidTransitionError, RunNotFoundError, ValidationConfigError
from invoice_pipeline.services.extraction.orchestrator import EngineOrchestrator
from invoice_pipeline.services.learning_feed import LearningFeed
from invoice_pipeline.services.notification_outbox import OutboxNotificationSink
from invoice_pipeline.services.pipeline_runs import PipelineRunner
from invoice_pipeline.services.record_store import RunView, SqlRecordStore

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_DOCUMENT_BYTES = 15 * 1024 * 1024


class RunCreateRequest(BaseModel):
    document_locator: str = Field(min_length=1, max_length=1024)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    actor_id: Optional[str] = Field(default=None, max_length=128)


class ReviewRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    actor_id: str = Field(min_length=1, max_length=128)
    reason: Optional[str] = Field(default=None, max_length=2000)
    corrections: Optional[dict[str, Any]] = None


class DocumentUploadResponse(BaseModel):
    document_locator: str
    content_type: Optional[str] = None
    size: int


class RunOut(BaseModel):
    id: uuid.UUID
    document_locator: str
    status: str
    disposition: Optional[str] = None
    idempotency_key: Optional[str] = None
    record_id: Optional[uuid.UUID] = None
    corrected_record_id: Optional[uuid.UUID] = None
    failure_kind: Optional[str] = None
    failure_engine: Optional[str] = None
    failure_message: Optional[str] = None
    operator_action_required: bool = False
    validation_score: Optional[float] = None
    decision_reasons: list[str] = Field(default_factory=list)
    engine_attempts: list[dict[str, Any]] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    record: Optional[dict[str, Any]] = None
    findings: list[dict[str, Any]] = Field(default_factory=list)


class AuditEntryOut(BaseModel):
    sequence: int
    action: str
    actor_type: str
    actor_id: Optional[str] = None
    old_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    timestamp: Optional[str] = None


class AuditListResponse(BaseModel):
    run_id: uuid.UUID
    items: list[AuditEntryOut]


class ConfigReloadResponse(BaseModel):
    engines: list[str]
    ab_test_enabled: bool
    enabled_rules: list[str]


def _run_out(view: RunView) -> RunOut:
    return RunOut(**view.__dict__)


@lru_cache
def get_record_store() -> SqlRecordStore:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    return SqlRecordStore(SessionLocal)


@lru_cache
def get_pipeline_runner() -> PipelineRunner:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    settings = get_settings()
    return PipelineRunner(
        get_record_store(),
        EngineOrchestrator(get_object_store()),
        notifier=OutboxNotificationSink(SessionLocal) if settings.enable_notification_outbox else None,
        learning_feed=LearningFeed(SessionLocal, enabled=settings.learning_feed_enabled),
    )


def get_document_store() -> ObjectStore:
    return get_object_store()


@router.post("/documents", response_model=DocumentUploadResponse, status_code=201)
async def upload_document(
    file: UploadFile = File(...),
    store: ObjectStore = Depends(get_document_store),
):
    content = await file.read()
    if not content:
        raise HTTPException(400, "Empty document")
    if len(content) > MAX_DOCUMENT_BYTES:
        raise HTTPException(413, "Document too large")
    try:
        locator = store.put(content, filename=file.filename, content_type=file.content_type)
    except ObjectStoreError as exc:
        logger.error("Document upload failed: %s", exc)
        raise HTTPException(502, "Document storage unavailable") from exc
    return DocumentUploadResponse(document_locator=locator, content_type=file.content_type, size=len(content))


@router.post("/runs", response_model=RunOut, status_code=201)
async def create_run(
    payload: RunCreateRequest,
    runner: PipelineRunner = Depends(get_pipeline_runner),
    store: SqlRecordStore = Depends(get_record_store),
):
    if payload.idempotency_key:
        existing = store.find_run_id(payload.idempotency_key)
        if existing is not None:
            return _run_out(store.get_run(existing))

    run = await runner.execute(
        payload.document_locator,
        idempotency_key=payload.idempotency_key,
        actor_id=payload.actor_id,
    )
    return _run_out(store.get_run(run.stored_run_id or run.id))


@router.get("/runs/{run_id}", response_model=RunOut)
async def get_run(run_id: uuid.UUID, store: SqlRecordStore = Depends(get_record_store)):
    try:
        return _run_out(store.get_run(run_id))
    except RunNotFoundError as exc:
        raise HTTPException(404, "Run not found") from exc


@router.get("/runs/{run_id}/audit", response_model=AuditListResponse)
async def get_run_audit(run_id: uuid.UUID, store: SqlRecordStore = Depends(get_record_store)):
    try:
        store.get_run(run_id)
    except RunNotFoundError as exc:
        raise HTTPException(404, "Run not found") from exc
    return AuditListResponse(run_id=run_id, items=[AuditEntryOut(**item) for item in store.list_audit(run_id)])


@router.post("/runs/{run_id}/review", response_model=RunOut)
async def review_run(
    run_id: uuid.UUID,
    payload: ReviewRequest,
    runner: PipelineRunner = Depends(get_pipeline_runner),
):
    try:
        view = await runner.apply_review_decision(
            run_id,
            decision=payload.decision,
            actor_id=payload.actor_id,
            corrections=payload.corrections,
            reason=payload.reason,
        )
    except RunNotFoundError as exc:
        raise HTTPException(404, "Run not found") from exc
    except InvalidTransitionError as exc:
        raise HTTPException(409, str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from exc
    return _run_out(view)


@router.post("/config/reload", response_model=ConfigReloadResponse)
async def reload_config():
    try:
        config = reload_pipeline_config()
    except ValidationConfigError as exc:
        raise HTTPException(422, str(exc)) from exc
    return ConfigReloadResponse(
        engines=[profile.name for profile in config.enabled_engines()],
        ab_test_enabled=config.ab_test.enabled,
        enabled_rules=list(config.validation.enabled_rules),
    )
