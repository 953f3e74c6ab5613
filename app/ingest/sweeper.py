import logging
import threading
from typing import Optional

from app.ingest.jobs import JobRegistry, SweepReport
from app.ingest.store import ChunkStore

logger = logging.getLogger(__name__)


class Sweeper:
    """Daemon thread that periodically evicts stale uploads and finished jobs and fails stuck jobs.
    Why available: In-memory tables would otherwise grow without bound when clients abandon uploads or never poll."""

    def __init__(self, store: ChunkStore, registry: JobRegistry, interval_seconds: float):
        self.store = store
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> SweepReport:
        expired = self.store.sweep_expired()
        report = self.registry.sweep()
        if expired or report.evicted or report.timed_out or report.expired_uploads:
            logger.info(
                "Sweep: %d uploads expired, %d jobs evicted, %d timed out, %d pending jobs expired",
                len(expired), len(report.evicted), len(report.timed_out), len(report.expired_uploads),
            )
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("Sweep failed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ingest-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
