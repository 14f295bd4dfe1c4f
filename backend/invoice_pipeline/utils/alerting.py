import logging
import time
from collections import deque
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 3600
DEFAULT_THRESHOLDS = {
    "ENGINE_CREDENTIALS_REJECTED": 1,
    "EXTRACTION_FAILED": 5,
    "VALIDATION_FAILED": 3,
    "RULE_EXECUTION_ERROR": 3,
    "HISTORY_UNAVAILABLE": 5,
}


class AuditAlertTracker:
    def __init__(self, window_seconds: int, thresholds: dict[str, int]) -> None:
        self._window_seconds = window_seconds
        self._thresholds = thresholds
        self._buckets: dict[str, deque[float]] = {}
        self._lock = Lock()

    def record(self, action: str, metadata: Optional[dict] = None) -> bool:
        """Count *action*; returns True when this occurrence raised an alert."""
        if action not in self._thresholds:
            return False
        limit = self._thresholds[action]
        now = time.monotonic()
        alerted = False
        with self._lock:
            bucket = self._buckets.setdefault(action, deque())
            cutoff = now - self._window_seconds
            while bucket and bucket[0] <= cutoff:
                bucket.popleft()
            bucket.append(now)
            # at the threshold and at every multiple of it
            if len(bucket) % limit == 0:
                alerted = True
                logger.warning(
                    "ALERT audit_action=%s count=%s window_seconds=%s metadata=%s",
                    action,
                    len(bucket),
                    self._window_seconds,
                    metadata or {},
                )
        return alerted

    def count(self, action: str) -> int:
        with self._lock:
            return len(self._buckets.get(action, ()))

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()


alert_tracker = AuditAlertTracker(DEFAULT_WINDOW_SECONDS, DEFAULT_THRESHOLDS)
