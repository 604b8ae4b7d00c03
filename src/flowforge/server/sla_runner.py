"""Background thread that runs the SLA sweep periodically."""

from __future__ import annotations

import logging
import threading

from flowforge.engine.service import WorkflowService

logger = logging.getLogger(__name__)


class SlaSweepRunner:
    def __init__(self, service: WorkflowService, *, interval_seconds: float) -> None:
        self._service = service
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="sla-sweep", daemon=True)
        self._thread.start()
        logger.info("SLA sweep started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._service.sla_sweep()
            except Exception:
                # Keep sweeping; the next tick may succeed.
                logger.exception("SLA sweep failed")
