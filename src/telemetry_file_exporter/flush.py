"""Background flusher: makes buffered writes durable on a fixed interval.

Runs in a daemon thread independent of write volume.  Data written since
the last tick is only as durable as the OS page cache.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from telemetry_file_exporter.config import DEFAULT_FLUSH_INTERVAL
from telemetry_file_exporter.pool import HandlePool

logger = logging.getLogger(__name__)


class FlushScheduler:
    """Call :meth:`HandlePool.flush_all` every *interval* seconds.

    An interval of ``0`` is treated as the one-second default.
    """

    def __init__(self, pool: HandlePool, interval: float = DEFAULT_FLUSH_INTERVAL) -> None:
        self._pool = pool
        self._interval = interval if interval > 0 else DEFAULT_FLUSH_INTERVAL
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="flush-scheduler", daemon=True
        )
        self._thread.start()
        logger.debug("Flush scheduler started (interval=%.3fs)", self._interval)

    def tick(self) -> int:
        """Flush once now; returns the number of files flushed."""
        flushed = self._pool.flush_all()
        if flushed:
            logger.debug("Flushed %d file(s)", flushed)
        return flushed

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking and wait for the thread to exit."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.tick()
            except Exception:
                logger.exception("Flush tick failed")
