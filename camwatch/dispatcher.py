from __future__ import annotations

"""Bounded alert/info upload queues drained by a single sender loop."""

import logging
import queue
import threading
from typing import Sequence

from camwatch.jobs import UploadJob
from camwatch.metrics import MetricsRegistry
from camwatch.notifier import Notifier

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 5000
IDLE_POLL_SECONDS = 0.1


class UploadDispatcher:
    """Sends queued images through each camera's notifier.

    Alert jobs (detections) go to the alert chat, info jobs (snapshots,
    rejected boxes, tables) to the command chat. Each round takes at most one
    job from each queue and alternates which queue goes first, so a flood on
    one queue cannot starve the other.
    """

    def __init__(
        self,
        notifiers: Sequence[Notifier],
        registry: MetricsRegistry,
        capacity: int = DEFAULT_CAPACITY,
    ) -> None:
        self.notifiers = list(notifiers)
        self.registry = registry
        self.alert_queue: queue.Queue[UploadJob] = queue.Queue(maxsize=capacity)
        self.info_queue: queue.Queue[UploadJob] = queue.Queue(maxsize=capacity)
        self._alert_first = True

    def submit_alert(self, job: UploadJob) -> None:
        """Queue an alert image; blocks while the queue is full."""
        self.alert_queue.put(job)

    def submit_info(self, job: UploadJob) -> None:
        """Queue an informational image; blocks while the queue is full."""
        self.info_queue.put(job)

    def _upload(self, job: UploadJob, alert: bool) -> None:
        metrics = self.registry.camera(job.camera_index)
        notifier = self.notifiers[job.camera_index]
        try:
            sent = notifier.send_image(job.data, caption=job.caption, alert=alert)
        except Exception:
            logger.exception("Upload failed for camera %d (%r)", job.camera_index, job.caption)
            sent = False
        if sent:
            metrics.upload_success.inc()
        else:
            logger.error("Upload dropped for camera %d (%r)", job.camera_index, job.caption)
            metrics.upload_error.inc()

    def dispatch_once(self) -> int:
        """Send at most one job from each queue and return how many were sent."""
        order = [(self.alert_queue, True), (self.info_queue, False)]
        if not self._alert_first:
            order.reverse()
        self._alert_first = not self._alert_first

        handled = 0
        for jobs, alert in order:
            try:
                job = jobs.get_nowait()
            except queue.Empty:
                continue
            self._upload(job, alert)
            handled += 1
        return handled

    def run(self, stop_event: threading.Event) -> None:
        """Drain both queues until `stop_event` is set."""
        logger.info("Upload dispatcher started")
        while not stop_event.is_set():
            if self.dispatch_once() == 0:
                stop_event.wait(timeout=IDLE_POLL_SECONDS)
        logger.info("Upload dispatcher stopped")
