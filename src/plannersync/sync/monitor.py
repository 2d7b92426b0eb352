"""
Change Monitor -- notice local edits and trigger a debounced auto-sync.

A background thread snapshots the watched local keys every
``poll_interval`` seconds. A snapshot that differs from the previous
one marks changes as pending. Once no new change has arrived for
``debounce_seconds``, auto-sync runs, provided all four gates pass:

    1. the engine has a connected session
    2. auto-sync is enabled in the settings
    3. no sync is already in flight
    4. ``cooldown_seconds`` have passed since the last attempt

A closed gate skips the cycle quietly; changes stay pending and the
next poll tries again. Requests are dropped, never queued.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Callable, Optional

from .engine import SyncEngine
from .models import BatchResult

logger = logging.getLogger("plannersync.sync.monitor")


class ChangeMonitor:
    """Polls local storage on a background thread.

    Args:
        engine: Engine whose store is watched and whose auto_sync runs.
        clock: Monotonic time source, injectable for tests.
    """

    # Seconds stop() waits for the polling thread to finish its cycle.
    join_timeout = 5.0

    def __init__(
        self,
        engine: SyncEngine,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self._clock = clock
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._snapshot: Optional[str] = None

        self.pending_changes = False
        self.last_change_at: Optional[float] = None
        self.changed_keys: list[str] = []
        self.last_sync_attempt: Optional[float] = None
        self.syncing = False
        self.last_result: Optional[BatchResult] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start polling. Restarts cleanly if already running."""
        if self.running:
            self.stop()

        self._snapshot = self._take_snapshot()
        # Each polling thread waits on its own event.
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            args=(self._stop_event,),
            name="plannersync-monitor",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Change monitor started (poll %.1fs, debounce %.1fs)",
            self.engine.settings.poll_interval,
            self.engine.settings.debounce_seconds,
        )

    def stop(self) -> None:
        """Stop polling. A no-op when not running."""
        if self._thread is None:
            return
        self._stop_event.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=self.join_timeout)
        self._thread = None
        logger.info("Change monitor stopped")

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(timeout=self.engine.settings.poll_interval):
            try:
                self.tick()
            except Exception as exc:
                logger.error("Monitor cycle failed: %s", exc)

    def _take_snapshot(self) -> str:
        return self.engine.store.snapshot(self.engine.watched_keys())

    # -- one cycle ----------------------------------------------------------

    def tick(self) -> Optional[BatchResult]:
        """Poll once and sync if the debounce window has closed."""
        self.poll()
        if self.due():
            return self.try_sync()
        return None

    def poll(self) -> bool:
        """Compare a fresh snapshot with the last one.

        Returns:
            True if the watched keys changed since the previous poll.
        """
        current = self._take_snapshot()
        with self._lock:
            previous = self._snapshot
            self._snapshot = current
            if previous is None or current == previous:
                return False

            self.pending_changes = True
            self.last_change_at = self._clock()
            self.changed_keys = _changed_keys(previous, current)
        logger.debug("Local change detected in %s", ", ".join(self.changed_keys))
        return True

    def due(self) -> bool:
        """Changes are pending and the debounce delay has elapsed."""
        with self._lock:
            if not self.pending_changes or self.last_change_at is None:
                return False
            quiet_for = self._clock() - self.last_change_at
        return quiet_for >= self.engine.settings.debounce_seconds

    def try_sync(self) -> Optional[BatchResult]:
        """Run auto-sync if every gate is open.

        Returns:
            The batch result, or None when a gate skipped the cycle.
        """
        settings = self.engine.settings
        with self._lock:
            now = self._clock()
            if not self.engine.connected:
                logger.debug("Auto-sync skipped: not connected")
                return None
            if not settings.auto_sync:
                logger.debug("Auto-sync skipped: disabled")
                return None
            if self.syncing:
                logger.debug("Auto-sync skipped: sync already in flight")
                return None
            if (
                self.last_sync_attempt is not None
                and now - self.last_sync_attempt < settings.cooldown_seconds
            ):
                logger.debug("Auto-sync skipped: cooling down")
                return None

            self.syncing = True
            self.last_sync_attempt = now
            self.pending_changes = False

        try:
            result = self.engine.auto_sync()
        finally:
            with self._lock:
                self.syncing = False

        self.last_result = result
        if result.results:
            logger.info("Auto-sync finished: %s", result.summary())
        return result


def _changed_keys(previous: str, current: str) -> list[str]:
    """Which keys differ between two store snapshots."""
    before = dict(json.loads(previous))
    after = dict(json.loads(current))
    return sorted(k for k in set(before) | set(after) if before.get(k) != after.get(k))
