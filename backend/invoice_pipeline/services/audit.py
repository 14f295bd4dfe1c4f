"""Audit events for pipeline runs.

Events are collected on the run while it executes and written together with
the run at its terminal state; review overrides append afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from invoice_pipeline.core.config import get_settings
from invoice_pipeline.models.invoice import AuditLog
from invoice_pipeline.utils.alerting import alert_tracker

logger = logging.getLogger(__name__)

ACTOR_SYSTEM = "SYSTEM"
ACTOR_REVIEWER = "REVIEWER"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    action: str
    actor_type: str = ACTOR_SYSTEM
    actor_id: Optional[str] = None
    old_value: Optional[dict[str, Any]] = None
    new_value: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    at: datetime = field(default_factory=_now)

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "metadata": self.metadata,
            "at": self.at.isoformat(),
        }


def _redact(value: Any, redact_keys: set[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, dict):
        redacted = {}
        for key, item in value.items():
            if isinstance(key, str) and key.lower() in redact_keys:
                redacted[key] = "[REDACTED]"
            else:
                redacted[key] = _redact(item, redact_keys)
        return redacted
    if isinstance(value, list):
        return [_redact(item, redact_keys) for item in value]
    return value


def create_audit_log(
    db: Session,
    *,
    entity_type: str,
    entity_id: str,
    event: AuditEvent,
    sequence: int,
) -> None:
    settings = get_settings()
    old_value, new_value, metadata = event.old_value, event.new_value, event.metadata
    if settings.audit_redaction_enabled:
        redact_keys = {item.lower() for item in settings.audit_redaction_fields}
        old_value = _redact(old_value, redact_keys)
        new_value = _redact(new_value, redact_keys)
        metadata = _redact(metadata, redact_keys)

    db.add(
        AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            sequence=sequence,
            action=event.action,
            old_value=old_value,
            new_value=new_value,
            actor_type=event.actor_type,
            actor_id=event.actor_id,
            audit_meta=metadata,
            timestamp=event.at,
        )
    )
    try:
        alert_tracker.record(event.action, metadata)
    except Exception:
        logger.exception("Alert tracker failed for action=%s", event.action)
