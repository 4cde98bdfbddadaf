from __future__ import annotations
from typing import Optional
import logging
import threading

from .engine import CustodyEngine

logger = logging.getLogger(__name__)

class SimulationTicker:
    """
    Calls engine.step() every interval_s seconds on a daemon thread.
    Steps take the engine lock, so they never interleave with request handling.
    """
    def __init__(self, engine: CustodyEngine, interval_s: float = 10.0) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        self.engine = engine
        self.interval_s = float(interval_s)
        self.ticks_run = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        self.engine.step(1)
        self.ticks_run += 1

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("Simulation tick failed; ticker stopping")
                return

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="custody-ticker", daemon=True)
        self._thread.start()
        logger.info("Simulation ticker started (every %.1fs)", self.interval_s)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Simulation ticker stopped after %d ticks", self.ticks_run)
