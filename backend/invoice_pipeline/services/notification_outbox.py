from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

import httpx
from sqlalchemy import insert, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from invoice_pipeline.core.config import get_settings
from invoice_pipeline.models.invoice import NotificationOutbox

logger = logging.getLogger(__name__)

TEMPLATE_RUN_FINISHED = "RUN_FINISHED"


def _now_utc(db: Optional[Session] = None) -> datetime:
    # SQLite stores timezone-aware datetimes as naive values; compare naive UTC there.
    bind = getattr(db, "bind", None) if db is not None else None
    dialect = getattr(getattr(bind, "dialect", None), "name", "")
    if dialect == "sqlite" or (not dialect and (get_settings().database_url or "").startswith("sqlite")):
        return datetime.now(timezone.utc).replace(tzinfo=None)
    return datetime.now(timezone.utc)


def _canonical_json(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def _dedupe_key(*, channel: str, template_key: str, entity_type: str, entity_id: str, payload_json: Any) -> str:
    raw = _canonical_json(
        {
            "channel": channel,
            "template_key": template_key,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "payload": payload_json,
        }
    )
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{channel}:{template_key}:{entity_type}:{entity_id}:{digest[:16]}"


def enqueue_notification(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    channel: str,
    template_key: str,
    payload_json: dict[str, Any],
) -> bool:
    """
    Inserts a notification request into the outbox.
    Idempotent via dedupe_key: the same notification is stored once.
    """
    dedupe = _dedupe_key(
        channel=channel,
        template_key=template_key,
        entity_type=entity_type,
        entity_id=entity_id,
        payload_json=payload_json,
    )

    values = {
        "id": uuid.uuid4(),
        "entity_type": entity_type,
        "entity_id": entity_id,
        "channel": channel,
        "template_key": template_key,
        "payload_json": payload_json,
        "dedupe_key": dedupe,
        "status": "PENDING",
        "attempt_count": 0,
        "next_attempt_at": _now_utc(db),
    }

    dialect = getattr(getattr(db, "bind", None), "dialect", None)
    dialect_name = getattr(dialect, "name", "") or ""
    table = NotificationOutbox.__table__

    if dialect_name == "postgresql":
        stmt = pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=["dedupe_key"])
        result = db.execute(stmt)
        return bool(result.rowcount)
    if dialect_name == "sqlite":
        stmt = sqlite_insert(table).values(**values).prefix_with("OR IGNORE")
        result = db.execute(stmt)
        return bool(result.rowcount)

    existing = db.execute(
        select(NotificationOutbox.id).where(NotificationOutbox.dedupe_key == dedupe)
    ).scalar_one_or_none()
    if existing is not None:
        return False
    db.execute(insert(table).values(**values))
    return True


def _compute_backoff(attempt_count: int) -> timedelta:
    # 1m, 2m, 4m, 8m, ... capped to 60m
    seconds = 60 * (2 ** max(0, attempt_count - 1))
    seconds = max(60, min(3600, seconds))
    return timedelta(seconds=seconds)


def _deliver_webhook(row: NotificationOutbox) -> None:
    settings = get_settings()
    if not settings.notification_webhook_url:
        raise RuntimeError("NOTIFICATION_WEBHOOK_URL is not configured")
    response = httpx.post(
        settings.notification_webhook_url,
        json={"template": row.template_key, "dedupe_key": row.dedupe_key, **(row.payload_json or {})},
        timeout=settings.notification_webhook_timeout_seconds,
    )
    response.raise_for_status()


def _deliver_log(row: NotificationOutbox) -> None:
    payload = row.payload_json or {}
    logger.info(
        "Run notification template=%s run_id=%s status=%s summary=%s",
        row.template_key,
        payload.get("run_id"),
        payload.get("status"),
        payload.get("summary"),
    )


CHANNELS: dict[str, Callable[[NotificationOutbox], None]] = {
    "webhook": _deliver_webhook,
    "log": _deliver_log,
}


def process_notification_outbox_once(
    db: Session,
    *,
    batch_size: int = 50,
    max_attempts: int = 5,
) -> int:
    """
    Processes due notifications.
    Returns number of successfully SENT items.
    """
    now = _now_utc(db)

    due = (
        db.execute(
            select(NotificationOutbox)
            .where(
                NotificationOutbox.status.in_(["PENDING", "RETRY"]),
                NotificationOutbox.next_attempt_at <= now,
            )
            .order_by(NotificationOutbox.next_attempt_at.asc())
            .limit(int(max(1, batch_size)))
        )
        .scalars()
        .all()
    )

    sent = 0
    for row in due:
        row.attempt_count = int(row.attempt_count or 0) + 1

        try:
            deliver = CHANNELS.get(row.channel)
            if deliver is None:
                raise RuntimeError(f"Unsupported channel: {row.channel}")
            deliver(row)

            row.status = "SENT"
            row.sent_at = now
            row.last_error = None
            sent += 1
        except Exception as exc:
            row.last_error = str(exc)
            if int(row.attempt_count or 0) >= int(max_attempts):
                row.status = "FAILED"
                row.next_attempt_at = now + timedelta(days=365)
                logger.error("Notification %s failed permanently: %s", row.id, exc)
            else:
                row.status = "RETRY"
                row.next_attempt_at = now + _compute_backoff(int(row.attempt_count or 0))

    if due and sent:
        logger.info("Notification outbox processed: sent=%s total=%s", sent, len(due))
    return sent


class NotificationSink(Protocol):
    def notify(self, run_id: uuid.UUID, status: str, summary: dict[str, Any]) -> None: ...


class OutboxNotificationSink:
    """At-least-once run notifications through the outbox table."""

    def __init__(self, session_factory: Callable[[], Session], *, channel: Optional[str] = None) -> None:
        self._session_factory = session_factory
        self._channel = channel

    def notify(self, run_id: uuid.UUID, status: str, summary: dict[str, Any]) -> None:
        channel = self._channel or get_settings().notification_channel
        db = self._session_factory()
        try:
            created = enqueue_notification(
                db,
                entity_type="pipeline_run",
                entity_id=str(run_id),
                channel=channel,
                template_key=TEMPLATE_RUN_FINISHED,
                payload_json={"run_id": str(run_id), "status": status, "summary": summary},
            )
            db.commit()
        finally:
            db.close()
        if not created:
            logger.debug("Notification for run %s status=%s already queued", run_id, status)
