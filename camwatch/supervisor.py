from __future__ import annotations

"""Periodic watchdog: follows the activation schedule and halts on a stalled pipeline."""

import logging
import sqlite3
import threading
from typing import Callable, Optional, Sequence

from camwatch.camera import Camera
from camwatch.detector import Detector, FeedError
from camwatch.metrics import MetricsRegistry

logger = logging.getLogger(__name__)

# The stall check only arms once this many ticks have been recorded, so
# startup and feed opening do not count as a stall.
STALL_MIN_TICKS = 600
STALL_MIN_RATE = 2.0


class Supervisor:
    """Runs every `interval` seconds alongside the frame scheduler."""

    def __init__(
        self,
        cameras: Sequence[Camera],
        detector: Optional[Detector],
        registry: MetricsRegistry,
        restart: Callable[[], None],
        broadcast: Callable[[str], None],
        interval: float = 5.0,
    ) -> None:
        self.cameras = list(cameras)
        self.detector = detector
        self.registry = registry
        self.restart = restart
        self.broadcast = broadcast
        self.interval = interval
        self._halted = False

    def run(self, stop_event: threading.Event) -> None:
        """Check immediately, then every `interval` until `stop_event` is set."""
        logger.info("Supervisor started, interval %.1fs", self.interval)
        while not stop_event.is_set():
            self.registry.supervisor_tick.inc()
            self.check_mode_switch()
            self.check_main_ticker()
            stop_event.wait(timeout=self.interval)
        logger.info("Supervisor stopped")

    def check_mode_switch(self) -> bool:
        """Align each camera's active flag with its schedule; return whether any changed."""
        changed = False
        for camera in self.cameras:
            try:
                scheduled = camera.store.is_active_now()
            except sqlite3.Error:
                logger.exception("Failed reading schedule for %s", camera.name)
                break
            if scheduled == camera.is_active():
                continue
            camera.set_active(scheduled)
            changed = True
            state = "ON" if scheduled else "OFF"
            logger.info("%s: detector changed state to %s", camera.name, state)
            camera.notifier.send_text(f"Detector changed state: {state}")

        if changed and self.detector is not None:
            try:
                self.detector.toggle_feeds()
            except FeedError:
                logger.exception("Failed toggling camera feeds")
        return changed

    def check_main_ticker(self) -> bool:
        """Halt once if the main ticker has run long enough but now runs too slowly."""
        if self._halted:
            return False
        snap = self.registry.main_ticker.snapshot()
        if snap.count <= STALL_MIN_TICKS or snap.rate1 >= STALL_MIN_RATE:
            return False
        self._halted = True
        message = f"Frame rate too low: {snap.rate1:.2f}, halting!"
        logger.error(message)
        self.broadcast(message)
        self.restart()
        return True
