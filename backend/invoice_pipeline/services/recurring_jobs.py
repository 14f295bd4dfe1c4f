from __future__ import annotations

import asyncio
import logging

from invoice_pipeline.core.config import get_settings
from invoice_pipeline.core.dependencies import SessionLocal
from invoice_pipeline.services.notification_outbox import process_notification_outbox_once

logger = logging.getLogger(__name__)


def _process_outbox_batch(*, batch_size: int, max_attempts: int) -> int:
    db = SessionLocal()
    try:
        sent = process_notification_outbox_once(db, batch_size=batch_size, max_attempts=max_attempts)
        db.commit()
        return sent
    finally:
        db.close()


async def _notification_outbox_loop(*, interval_seconds: int, batch_size: int, max_attempts: int) -> None:
    # Backoff on errors to avoid tight loops.
    error_sleep = max(10, min(60, interval_seconds))
    while True:
        try:
            settings = get_settings()
            if not settings.enable_recurring_jobs or not settings.enable_notification_outbox:
                await asyncio.sleep(interval_seconds)
                continue
            if SessionLocal is None:
                await asyncio.sleep(interval_seconds)
                continue

            # webhook delivery blocks; keep it off the event loop
            await asyncio.to_thread(_process_outbox_batch, batch_size=batch_size, max_attempts=max_attempts)
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Notification outbox worker error")
            await asyncio.sleep(error_sleep)


def start_notification_outbox_worker() -> asyncio.Task | None:
    settings = get_settings()
    interval = int(max(5, min(300, settings.notification_worker_interval_seconds or 30)))
    batch_size = int(max(1, min(200, settings.notification_outbox_batch_size or 50)))
    max_attempts = int(max(1, min(20, settings.notification_outbox_max_attempts or 5)))
    return asyncio.create_task(
        _notification_outbox_loop(
            interval_seconds=interval,
            batch_size=batch_size,
            max_attempts=max_attempts,
        )
    )
