from __future__ import annotations
from typing import Callable, Optional
import logging
import threading
import time

_LOG = logging.getLogger("glimpse")


class ScanWorker:
    """
    Background thread that runs a synchronization pass once at start and then
    every `interval` seconds.

    Decoupled from the engine via an injected callable: `run_pass` should run
    one pass to completion (raising on structural failure). A failed pass is
    logged and the worker simply waits for the next tick; it never retries early.
    `on_busy` is the exception type run_pass raises when a pass triggered
    elsewhere is still active; that tick is skipped quietly.
    """

    def __init__(
        self,
        *,
        run_pass: Callable[[], object],
        interval: float,
        on_busy: type = RuntimeError,
        run_at_start: bool = True,
    ) -> None:
        self._run_pass = run_pass
        self._interval = max(1.0, float(interval))
        self._busy_exc = on_busy
        self._run_at_start = run_at_start
        self._stop = threading.Event()
        self._th: Optional[threading.Thread] = None
        self.passes = 0
        self.failures = 0

    def start(self) -> None:
        if self._th and self._th.is_alive():
            return
        self._stop.clear()
        t = threading.Thread(target=self._loop, name="scan-worker", daemon=True)
        self._th = t
        t.start()

    def stop(self, timeout: Optional[float] = None, *, join: bool = True) -> None:
        """Ask the loop to exit and wait up to `timeout` seconds (None: no limit).

        A pass already in progress is not interrupted; it finishes on its own.
        """
        self._stop.set()
        th = self._th
        if not join or th is None or th is threading.current_thread():
            return
        th.join(timeout)
        if th.is_alive():
            _LOG.warning("[scan] worker still busy after %ss; leaving it to finish", timeout)

    def is_running(self) -> bool:
        return bool(self._th and self._th.is_alive())

    def _tick(self, label: str) -> None:
        _LOG.info("[scan] starting %s scan", label)
        t0 = time.time()
        try:
            self._run_pass()
        except self._busy_exc:
            _LOG.info("[scan] %s scan skipped: a pass is already running", label)
            return
        except Exception as e:
            self.failures += 1
            _LOG.error("[scan] %s scan error: %s", label, e)
            return
        self.passes += 1
        _LOG.info("[scan] %s scan complete in %.1fs", label, time.time() - t0)

    def _loop(self) -> None:
        if self._run_at_start and not self._stop.is_set():
            self._tick("initial")
        while not self._stop.wait(self._interval):
            self._tick("periodic")
