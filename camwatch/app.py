from __future__ import annotations

"""Top-level wiring: cameras, workers, heartbeat, bus control and shutdown."""

import logging
import os
import queue
import threading
from typing import Callable, Dict, List, Optional, Sequence

import requests

from camwatch.camera import Camera
from camwatch.commands import CommandHandler
from camwatch.config import CameraSettings, Settings
from camwatch.detector import Detector, YoloDetector
from camwatch.dispatcher import UploadDispatcher
from camwatch.jobs import Command
from camwatch.messaging import Messenger, MqttMessenger, NoopMessenger
from camwatch.metrics import MetricsRegistry
from camwatch.notifier import NoopNotifier, Notifier, TelegramBot
from camwatch.scheduler import FrameScheduler
from camwatch.store import ScheduleStore
from camwatch.supervisor import Supervisor

logger = logging.getLogger(__name__)

HARD_EXIT_GRACE_SECONDS = 5.0
HEARTBEAT_INTERVAL_SECONDS = 120.0
HEARTBEAT_TIMEOUT_SECONDS = 10.0
COMMAND_QUEUE_SIZE = 100

ALARM_MARKER = "HOUSE ALARM"

DetectorFactory = Callable[[List[Camera]], Detector]


def build_notifier(camera: CameraSettings) -> Notifier:
    """Telegram when the camera has a bot token and both groups, otherwise log-only."""
    if camera.telegram_bot_token and camera.telegram_group_alert and camera.telegram_group_command:
        return TelegramBot(
            bot_token=camera.telegram_bot_token,
            alert_chat_id=camera.telegram_group_alert,
            command_chat_id=camera.telegram_group_command,
        )
    logger.warning("Telegram not configured for %s, notifications are only logged", camera.name)
    return NoopNotifier(camera.name)


def build_messenger(settings: Settings) -> Messenger:
    if not settings.mqtt_enable:
        return NoopMessenger()
    return MqttMessenger(
        url=settings.mqtt_url,
        topic=settings.mqtt_topic,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
    )


class WatchApp:
    """Service object owning every component and the worker thread lifecycle.

    The frame scheduler runs on the calling thread; everything else runs on
    named daemon threads sharing one `stop_event`.
    """

    def __init__(
        self,
        settings: Settings,
        notifiers: Optional[Sequence[Notifier]] = None,
        detector_factory: Optional[DetectorFactory] = None,
        messenger: Optional[Messenger] = None,
        hard_exit: Callable[[int], None] = os._exit,
    ) -> None:
        """Build stores, cameras and workers; fails fast on config or storage errors."""
        self.settings = settings
        self.stop_event = threading.Event()
        self.registry = MetricsRegistry()
        self._hard_exit = hard_exit
        self._exit_lock = threading.Lock()
        self._exit_timer: Optional[threading.Timer] = None
        self.threads: Dict[str, threading.Thread] = {}

        # One lock for every store serializes all schedule access in the process.
        store_lock = threading.Lock()
        if notifiers is None:
            notifiers = [build_notifier(camera) for camera in settings.cameras]
        self.cameras: List[Camera] = []
        stores: List[ScheduleStore] = []
        try:
            for camera_settings, notifier in zip(settings.cameras, notifiers):
                # Keyed by the configured CAMERAn number, not the dense index.
                store = ScheduleStore(settings.sqlite_db_dir / f"camera{camera_settings.slot}.db", lock=store_lock)
                stores.append(store)
                self.cameras.append(Camera(camera_settings, notifier, store))
                self.registry.add_camera(camera_settings.name)

            if detector_factory is None:
                self.detector: Detector = YoloDetector(self.cameras, settings.detect_model)
            else:
                self.detector = detector_factory(self.cameras)
        except Exception as exc:
            logger.exception("Start-up failed")
            for notifier in notifiers:
                if not notifier.send_text(f"Fatal error: {exc}"):
                    logger.error("Could not report start-up failure")
            for store in stores:
                store.close()
            raise

        self.dispatcher = UploadDispatcher([camera.notifier for camera in self.cameras], self.registry)
        self.scheduler = FrameScheduler(
            self.cameras,
            self.detector,
            self.dispatcher,
            self.registry,
            alert_labels=settings.detect_alert_labels,
            frame_interval=settings.frame_interval_ms / 1000.0,
        )
        self.supervisor = Supervisor(
            self.cameras,
            self.detector,
            self.registry,
            restart=self.cancel_and_exit,
            broadcast=self.broadcast,
            interval=settings.supervisor_interval_seconds,
        )
        self.command_queue: queue.Queue[Command] = queue.Queue(maxsize=COMMAND_QUEUE_SIZE)
        self.commands = CommandHandler(
            self.cameras,
            self.scheduler,
            self.dispatcher,
            self.registry,
            restart=self.cancel_and_exit,
            app_params={
                "frame_interval_ms": str(settings.frame_interval_ms),
                "alert_labels": ",".join(settings.detect_alert_labels),
                "detect_model": settings.detect_model,
            },
        )
        self.messenger = messenger if messenger is not None else build_messenger(settings)

    def submit_command(self, cmd: Command) -> None:
        try:
            self.command_queue.put(cmd, timeout=1.0)
        except queue.Full:
            logger.warning("Command queue full, dropping %s", cmd)

    def broadcast(self, text: str) -> None:
        """Send a text message to every camera's command chat."""
        for camera in self.cameras:
            if not camera.notifier.send_text(text):
                logger.error("Broadcast to %s failed", camera.name)

    def handle_message(self, text: str) -> None:
        """React to alarm-panel messages: arming turns detection on, opening turns it off."""
        if ALARM_MARKER not in text:
            logger.debug("Ignoring bus message: %s", text)
            return
        if "OPENING" in text:
            mode = "off"
        elif "CLOSE" in text:
            mode = "on"
        else:
            logger.info("Alarm message without a known state: %s", text)
            return
        for camera in self.cameras:
            if camera.mqtt_control:
                logger.info("%s: alarm message sets mode %s", camera.name, mode)
                self.submit_command(Command(camera.index, "mode", "set", mode))

    def cancel_and_exit(self) -> None:
        """Stop all workers and force the process down after a grace period.

        Safe to call more than once and from any thread; only the first call
        arms the exit timer.
        """
        with self._exit_lock:
            if self._exit_timer is not None:
                return
            logger.warning("Shutting down, hard exit in %.0f seconds", HARD_EXIT_GRACE_SECONDS)
            self.stop_event.set()
            self._exit_timer = threading.Timer(HARD_EXIT_GRACE_SECONDS, self._hard_exit, args=(1,))
            self._exit_timer.daemon = True
            self._exit_timer.start()

    def _run_commands(self) -> None:
        """Consumer loop: execute operator commands one at a time."""
        while not self.stop_event.is_set():
            try:
                cmd = self.command_queue.get(timeout=0.25)
            except queue.Empty:
                continue
            try:
                self.commands.handle(cmd)
            except Exception:
                logger.exception("Failed handling command %s", cmd)

    def heartbeat_once(self) -> bool:
        self.registry.heartbeat_tick.inc()
        try:
            response = requests.get(self.settings.heartbeat_url, timeout=HEARTBEAT_TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            logger.error("Heartbeat failed: %s", exc)
            self.registry.heartbeat_error.inc()
            return False
        if response.status_code != 200:
            logger.error("Heartbeat returned HTTP %d", response.status_code)
            self.registry.heartbeat_error.inc()
            return False
        return True

    def _run_heartbeat(self) -> None:
        while not self.stop_event.is_set():
            self.heartbeat_once()
            self.stop_event.wait(timeout=HEARTBEAT_INTERVAL_SECONDS)

    def _start_thread(self, name: str, target: Callable[..., None], *args) -> None:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        self.threads[name] = thread
        logger.info("Started %s thread", name)

    def _start_workers(self) -> None:
        self._start_thread("dispatcher", self.dispatcher.run, self.stop_event)
        self._start_thread("supervisor", self.supervisor.run, self.stop_event)
        self._start_thread("command-handler", self._run_commands)
        self._start_thread("messenger", self.messenger.run_listener, self.stop_event, self.handle_message)
        if self.settings.heartbeat_url:
            self._start_thread("heartbeat", self._run_heartbeat)
        for camera in self.cameras:
            camera.notifier.start_command_listener(camera.index, self.submit_command)

    def _stop_workers(self) -> None:
        """Stop worker threads and close external resources."""
        self.stop_event.set()
        for name, thread in self.threads.items():
            thread.join(timeout=2)
            if thread.is_alive():
                logger.warning("%s thread did not stop in time", name)
        self.detector.close()
        for camera in self.cameras:
            camera.notifier.close()
            camera.store.close()
        logger.info("All workers and resources stopped")

    def run(self) -> None:
        """Run the frame scheduler on this thread until stopped or a fatal error."""
        logger.info(
            "Starting camwatch with %d cameras: %s",
            len(self.cameras),
            ", ".join(camera.name for camera in self.cameras),
        )
        self._start_workers()
        try:
            self.scheduler.run(self.stop_event)
        except KeyboardInterrupt:
            logger.info("Interrupted by user, stopping workers...")
            self.stop_event.set()
        except Exception as exc:
            logger.exception("Fatal error in frame scheduler")
            self.broadcast(f"Fatal error: {exc}")
            raise
        finally:
            self._stop_workers()
