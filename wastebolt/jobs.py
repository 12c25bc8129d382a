"""Periodic background work: surge recompute, pending expiry, re-dispatch."""
import logging
import threading
from typing import Any, Callable, List

logger = logging.getLogger(__name__)


class PeriodicJob(threading.Thread):
    """Run a callable every `interval` seconds until shut down."""

    def __init__(self, name: str, interval: float, fn: Callable[[], Any]) -> None:
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self._fn = fn
        self._shutdown = threading.Event()
        self.runs = 0

    def shutdown(self) -> None:
        self._shutdown.set()

    def run_once(self) -> None:
        try:
            self._fn()
        except Exception:
            # One failed sweep must not kill the job; the next tick retries
            logger.exception("Background job %s failed", self.name)
        finally:
            self.runs += 1

    def run(self) -> None:
        logger.info("Started background job %s (every %.0fs)", self.name, self.interval)
        self.run_once()
        while not self._shutdown.wait(self.interval):
            self.run_once()
        logger.info("Stopped background job %s", self.name)


class BackgroundJobs:
    def __init__(self) -> None:
        self._jobs: List[PeriodicJob] = []

    def add(self, name: str, interval: float, fn: Callable[[], Any]) -> PeriodicJob:
        job = PeriodicJob(name, interval, fn)
        self._jobs.append(job)
        return job

    @property
    def jobs(self) -> List[PeriodicJob]:
        return list(self._jobs)

    def start(self) -> None:
        for job in self._jobs:
            if not job.is_alive():
                job.start()

    def shutdown(self, timeout: float = 3.0) -> None:
        for job in self._jobs:
            job.shutdown()
        for job in self._jobs:
            if job.ident is None:
                continue
            job.join(timeout=timeout)
            if job.is_alive():
                logger.warning("Background job %s did not stop cleanly", job.name)
