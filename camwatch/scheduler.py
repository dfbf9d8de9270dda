from __future__ import annotations

"""Round-robin frame scheduler and on-demand snapshot/frame service."""

import logging
import queue
import threading
import time
from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from camwatch.camera import Camera
from camwatch.detector import CameraInactiveError, Detector, FrameReadError
from camwatch.dispatcher import UploadDispatcher
from camwatch.frame import FrameDetectResult, apply_policy
from camwatch.jobs import Command, UploadJob
from camwatch.metrics import MetricsRegistry
from camwatch.ratelimit import Clock

logger = logging.getLogger(__name__)

COMMAND_QUEUE_SIZE = 30
INACTIVE_REPLY = "Camera feed is currently inactive, turn it on first"

# Upper bound on how long the loop sleeps, so queued commands are served
# promptly between ticks.
COMMAND_POLL_SECONDS = 0.02


class FrameScheduler:
    """Drives detection across all cameras from a single thread.

    Every `frame_interval` seconds one camera, chosen round-robin, gets a
    frame read and run through the rejection pipeline; accepted boxes are
    rate limited and queued for upload. Missed ticks are dropped rather than
    replayed, so a slow detector lowers the frame rate instead of building a
    backlog. Between ticks, pending snapshot and frame commands are served
    one of each per pass.
    """

    def __init__(
        self,
        cameras: Sequence[Camera],
        detector: Optional[Detector],
        dispatcher: UploadDispatcher,
        registry: MetricsRegistry,
        alert_labels: Iterable[str],
        frame_interval: float = 0.2,
        clock: Clock = time.monotonic,
    ) -> None:
        if not cameras:
            raise ValueError("at least one camera is required")
        self.cameras: List[Camera] = list(cameras)
        self.detector = detector
        self.dispatcher = dispatcher
        self.registry = registry
        self.alert_labels = [label.lower() for label in alert_labels]
        self.frame_interval = frame_interval
        self._clock = clock
        self._index = -1
        self.snapshot_queue: queue.Queue[Command] = queue.Queue(maxsize=COMMAND_QUEUE_SIZE)
        self.frame_queue: queue.Queue[Command] = queue.Queue(maxsize=COMMAND_QUEUE_SIZE)

    def run(self, stop_event: threading.Event) -> None:
        """Tick and serve commands until `stop_event` is set; detector failures propagate."""
        logger.info(
            "Frame scheduler started for %d cameras, interval %.3fs", len(self.cameras), self.frame_interval
        )
        deadline = self._clock() + self.frame_interval
        while not stop_event.is_set():
            now = self._clock()
            if now >= deadline:
                self.tick()
                deadline += self.frame_interval
                if deadline <= self._clock():
                    deadline = self._clock() + self.frame_interval

            served = self._serve_pending()
            if not served:
                remaining = deadline - self._clock()
                if remaining > 0:
                    stop_event.wait(timeout=min(remaining, COMMAND_POLL_SECONDS))
        logger.info("Frame scheduler stopped")

    def _serve_pending(self) -> bool:
        served = False
        try:
            cmd = self.snapshot_queue.get_nowait()
        except queue.Empty:
            pass
        else:
            self.serve_snapshot(cmd)
            served = True
        try:
            cmd = self.frame_queue.get_nowait()
        except queue.Empty:
            pass
        else:
            self.serve_frame(cmd)
            served = True
        return served

    def tick(self) -> None:
        self.registry.main_ticker.mark()
        try:
            self.next_frame()
        except CameraInactiveError as exc:
            logger.debug("Skipping frame: %s", exc)

    def next_frame(self) -> None:
        """Advance to the next camera and process it if it is active."""
        self._index = (self._index + 1) % len(self.cameras)
        camera = self.cameras[self._index]
        if camera.is_active():
            self.registry.frame_read.mark()
            self.next_frame_from_camera(self._index)
        else:
            self.registry.frame_skip.mark()

    def next_frame_from_camera(self, index: int) -> None:
        camera = self.cameras[index]
        metrics = self.registry.camera(index)
        if self.detector is None:
            metrics.detector_none.inc()
            return

        try:
            result = self.detector.detect_next_frame(index)
        except FrameReadError:
            metrics.detector_error.inc()
            raise
        if result is None:
            metrics.detector_none.inc()
            return

        result.keep_alert_labels(self.alert_labels)
        if not result.boxes:
            metrics.detector_none.inc()
            return

        for box in result.boxes:
            metrics.box_widths.inc(box.width)
            metrics.box_heights.inc(box.height)
            metrics.box_confidences.inc(box.confidence)

        apply_policy(result, camera.policy)
        self._handle_rejected(camera, result)

        hits = result.hit_boxes()
        if not hits:
            return
        metrics.detector_hit.inc()

        if camera.limiter.try_acquire_overview():
            self.dispatcher.submit_alert(UploadJob(index, "", result.jpeg_bytes))
            metrics.overview_send.inc()
        else:
            metrics.overview_drop.inc()

        for box in hits:
            if camera.limiter.try_acquire():
                self.dispatcher.submit_alert(UploadJob(index, box.label_confidence(), box.jpeg_bytes))
                metrics.box_send.inc()
            else:
                logger.debug("%s: rate limited %s", camera.name, box.label_confidence())
                metrics.box_drop.inc()

    def _handle_rejected(self, camera: Camera, result: FrameDetectResult) -> None:
        metrics = self.registry.camera(camera.index)
        for box in result.rejected_boxes():
            logger.info("%s: %s", camera.name, box.reject_reason)
            metrics.box_reject.inc()
            if camera.send_rejected:
                self.dispatcher.submit_info(UploadJob(camera.index, box.reject_reason, box.jpeg_bytes))

    def _reply_inactive(self, camera: Camera) -> None:
        camera.notifier.send_text(INACTIVE_REPLY)

    def serve_snapshot(self, cmd: Command) -> None:
        """Send a raw frame from the camera, regardless of the schedule."""
        camera = self.cameras[cmd.camera_index]
        if self.detector is None:
            self._reply_inactive(camera)
            return
        try:
            data = self.detector.snapshot(cmd.camera_index)
        except CameraInactiveError:
            self._reply_inactive(camera)
            return
        caption = f"Snapshot: {datetime.now():%Y-%m-%d %H:%M:%S}"
        self.dispatcher.submit_info(UploadJob(cmd.camera_index, caption, data))
        self.registry.camera(cmd.camera_index).snapshot.inc()

    def serve_frame(self, cmd: Command) -> None:
        """Send a frame with the crop and ROI drawn on it, regardless of the schedule."""
        camera = self.cameras[cmd.camera_index]
        if self.detector is None:
            self._reply_inactive(camera)
            return
        try:
            caption, data = self.detector.annotate(cmd.camera_index)
        except CameraInactiveError:
            self._reply_inactive(camera)
            return
        self.dispatcher.submit_info(UploadJob(cmd.camera_index, caption, data))
        self.registry.camera(cmd.camera_index).snapshot.inc()
