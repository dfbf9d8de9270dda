from __future__ import annotations

"""Operator commands received from each camera's command chat."""

import logging
import queue
import sqlite3
import time
from typing import Callable, Dict, Sequence

from camwatch import render
from camwatch.camera import Camera
from camwatch.dispatcher import UploadDispatcher
from camwatch.jobs import Command, UploadJob
from camwatch.metrics import HistVals, MetricsRegistry, markdown_code
from camwatch.ratelimit import Clock
from camwatch.scheduler import FrameScheduler
from camwatch.store import UPLOAD_SCHED, ScheduleMode, ScheduleSpecError

logger = logging.getLogger(__name__)

SCHED_USAGE = "Usage: bot sched on|off <day>-<hour>[,...], e.g. `mon-5`, `mon` or `5`"
MODE_USAGE = "Usage: bot mode set on|off|sched"

HELP_TEXT = """Commands (prefix `bot` or `b`):
help - this text
ping - pong
snap - raw snapshot
frame - snapshot with crop and ROI drawn
tokens - rate limiter tokens left
params - app and camera parameters
hists - box size and confidence histograms
isactive - whether the detector is on
metrics - all counters and meters
uptime - seconds since start
restart - exit and let the service manager restart
sched init - activate every hour of the week
sched get - show the weekly schedule
sched on|off <day>-<hour>[,...] - change schedule cells
mode get - show the mode
mode set on|off|sched - set the mode
"""


def _format_params(params: Dict[str, str]) -> str:
    width = max((len(key) for key in params), default=0)
    return "".join(f"{key.ljust(width)}  {value}\n" for key, value in params.items())


class CommandHandler:
    """Executes parsed `Command`s and replies on the issuing camera's chat."""

    def __init__(
        self,
        cameras: Sequence[Camera],
        scheduler: FrameScheduler,
        dispatcher: UploadDispatcher,
        registry: MetricsRegistry,
        restart: Callable[[], None],
        app_params: Dict[str, str],
        clock: Clock = time.monotonic,
    ) -> None:
        self.cameras = list(cameras)
        self.scheduler = scheduler
        self.dispatcher = dispatcher
        self.registry = registry
        self.restart = restart
        self.app_params = dict(app_params)
        self._clock = clock
        self._started_at = clock()

    def handle(self, cmd: Command) -> None:
        if not 0 <= cmd.camera_index < len(self.cameras):
            logger.warning("Command for unknown camera %d: %s", cmd.camera_index, cmd)
            return
        camera = self.cameras[cmd.camera_index]
        logger.info("%s: command %s %s %s", camera.name, cmd.noun, cmd.verb, cmd.obj)

        if cmd.noun == "help":
            self._reply(camera, HELP_TEXT)
        elif cmd.noun == "ping":
            self._reply(camera, "pong")
        elif cmd.noun == "snap":
            self._enqueue(camera, self.scheduler.snapshot_queue, cmd)
        elif cmd.noun == "frame":
            self._enqueue(camera, self.scheduler.frame_queue, cmd)
        elif cmd.noun == "tokens":
            self._reply(camera, markdown_code(camera.tokens_remaining()))
        elif cmd.noun == "params":
            self._reply(camera, markdown_code(_format_params(self.app_params) + "\n" + _format_params(camera.params())))
        elif cmd.noun == "restart":
            self._reply(camera, "Restarting")
            self.restart()
        elif cmd.noun == "hists":
            self._send_histograms(camera)
        elif cmd.noun == "isactive":
            self._reply(camera, f"IsActive: {camera.store.is_active_now()}")
        elif cmd.noun == "metrics":
            self._reply(camera, self.registry.print_out())
        elif cmd.noun == "uptime":
            self._reply(camera, f"Uptime: {self._clock() - self._started_at:.0f}s")
        elif cmd.noun == "sched":
            self._handle_sched(camera, cmd)
        elif cmd.noun == "mode":
            self._handle_mode(camera, cmd)
        else:
            logger.info("%s: ignoring unknown command %r", camera.name, cmd.noun)

    def _reply(self, camera: Camera, text: str) -> None:
        if not camera.notifier.send_text(text):
            logger.error("%s: failed to send reply", camera.name)

    def _send_image(self, camera: Camera, caption: str, data: bytes) -> None:
        self.dispatcher.submit_info(UploadJob(camera.index, caption, data))

    def _enqueue(self, camera: Camera, target: "queue.Queue[Command]", cmd: Command) -> None:
        try:
            target.put_nowait(cmd)
        except queue.Full:
            logger.warning("%s: %s queue full, dropping command", camera.name, cmd.noun)
            self._reply(camera, "Busy, try again later")

    def _send_histograms(self, camera: Camera) -> None:
        metrics = self.registry.camera(camera.index)
        hists: Sequence[HistVals] = (metrics.box_heights, metrics.box_widths, metrics.box_confidences)
        for hist in hists:
            values = hist.values()
            if not values:
                logger.info("%s: no data for %s", camera.name, hist.title)
                continue
            self._send_image(camera, hist.title, render.histogram_jpeg(hist.title, values, bins=hist.buckets))

    def _send_table(self, camera: Camera) -> None:
        self._send_image(camera, "Upload schedule", camera.store.table_jpeg(UPLOAD_SCHED))

    def _handle_sched(self, camera: Camera, cmd: Command) -> None:
        try:
            if cmd.verb == "init":
                camera.store.activate_all(UPLOAD_SCHED)
            elif cmd.verb == "get":
                pass
            elif cmd.verb in ("on", "off"):
                if not cmd.obj:
                    self._reply(camera, SCHED_USAGE)
                    return
                apply = camera.store.activate if cmd.verb == "on" else camera.store.deactivate
                for spec in cmd.obj.split(","):
                    spec = spec.strip()
                    try:
                        apply(UPLOAD_SCHED, spec)
                    except ScheduleSpecError as exc:
                        self._reply(camera, f"Invalid schedule '{spec}': {exc}")
            else:
                self._reply(camera, SCHED_USAGE)
                return
        except sqlite3.Error:
            logger.exception("%s: schedule update failed", camera.name)
            self._reply(camera, "Schedule update failed")
            return
        self._send_table(camera)

    def _handle_mode(self, camera: Camera, cmd: Command) -> None:
        if cmd.verb == "get":
            mode = camera.store.get_mode(UPLOAD_SCHED)
            self._reply(camera, f"Mode set to '{mode.label}'")
        elif cmd.verb == "set":
            mode = ScheduleMode.from_str(cmd.obj)
            if mode is ScheduleMode.INVALID:
                self._reply(camera, MODE_USAGE)
                return
            camera.store.set_mode(UPLOAD_SCHED, mode)
            logger.info("%s: mode set to %s", camera.name, mode.label)
            self._reply(camera, f"Mode set to '{mode.label}'")
        else:
            self._reply(camera, MODE_USAGE)
