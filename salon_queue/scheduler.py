from __future__ import annotations

# Periodic lifecycle sweep.
#
# Runs `QueueEngine.sweep()` on a background thread every `interval`
# seconds. The sweep takes the same per-salon locks as live requests, so it
# interleaves safely with them:
# - customers notified longer than the grace period ago become no-shows
# - waiting customers within the notify lead are notified

import logging
import threading

from .engine import QueueEngine

logger = logging.getLogger(__name__)


class SweepScheduler:
    def __init__(self, engine: QueueEngine, *, interval: float = 30.0) -> None:
        if interval <= 0:
            raise ValueError("interval must be > 0")
        self.engine = engine
        self.interval = interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="queue-sweep", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread. Call before shutting the engine down."""
        self._stop_event.set()
        t = self._thread
        if t and t.is_alive():
            t.join(timeout=self.interval + 1.0)

    def run_once(self) -> int:
        changed = self.engine.sweep()
        if changed:
            logger.info("Sweep changed %s entries", len(changed))
        return len(changed)

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                # A failed sweep (e.g. storage unavailable) is retried next tick.
                logger.exception("Lifecycle sweep failed")
            self._stop_event.wait(self.interval)
