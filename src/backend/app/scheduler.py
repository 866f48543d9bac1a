import logging
import os
import socket
import threading
from typing import Any, Dict, Optional

import redis

from .events import emit_event
from .metrics_counters import CLEANUP_RUNS

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Runs conversation retention cleanup every ``interval_hours``.

    A tick that fires while the previous cleanup is still running is skipped.
    With a Redis ``lock_client`` only one replica runs a given tick.
    """

    def __init__(
        self,
        service,
        retention_days: int = 60,
        interval_hours: float = 24,
        lock_client: Optional[Any] = None,
        lock_key: str = "booking:cleanup:lock",
    ):
        if interval_hours <= 0:
            raise ValueError("interval_hours must be positive")
        self.service = service
        self.retention_days = retention_days
        self.interval_seconds = float(interval_hours) * 3600
        self.lock_client = lock_client
        self.lock_key = lock_key
        self.lock_ttl = int(os.getenv("CLEANUP_LOCK_SECS", str(max(60, int(self.interval_seconds) - 60))))
        self._ident = f"{socket.gethostname()}-{os.getpid()}"
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            logger.warning("cleanup_scheduler_already_running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="conversation-cleanup", daemon=True)
        self._thread.start()
        logger.info(
            "cleanup_scheduler_started",
            extra={"retention_days": self.retention_days, "interval_seconds": self.interval_seconds},
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("cleanup_scheduler_stopped")

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            # run_once owns its error handling; a failed tick never ends the loop
            self.run_once()

    def _acquire_replica_lock(self) -> bool:
        if self.lock_client is None:
            return True
        try:
            # NX=only set if not exists; EX=expire seconds
            return bool(self.lock_client.set(self.lock_key, self._ident, nx=True, ex=self.lock_ttl))
        except redis.RedisError:
            logger.warning("cleanup_lock_unavailable")
            return True  # if Redis unavailable, run as best-effort

    def run_once(self) -> Optional[Dict[str, Any]]:
        if not self._running.acquire(blocking=False):
            logger.warning("cleanup_tick_skipped", extra={"reason": "previous_run_active"})
            CLEANUP_RUNS.labels(outcome="skipped").inc()
            return None
        try:
            if not self._acquire_replica_lock():
                logger.info("cleanup_tick_skipped", extra={"reason": "lock_held_elsewhere"})
                CLEANUP_RUNS.labels(outcome="skipped").inc()
                return None
            logger.info("scheduled_cleanup_started", extra={"retention_days": self.retention_days})
            try:
                result = self.service.cleanup_old_conversations(self.retention_days)
            except Exception:
                logger.exception("scheduled_cleanup_failed", extra={"retention_days": self.retention_days})
                CLEANUP_RUNS.labels(outcome="failed").inc()
                return None
            CLEANUP_RUNS.labels(outcome="ok").inc()
            emit_event("ConversationCleanupCompleted", dict(result))
            return result
        finally:
            self._running.release()
