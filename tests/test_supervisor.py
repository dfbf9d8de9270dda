"""
Tests for the supervisor

Tests schedule-driven mode switching and the stalled-ticker halt.
"""

import threading
import time

from camwatch.detector import FeedError
from camwatch.store import UPLOAD_SCHED, ScheduleMode
from camwatch.supervisor import Supervisor


class Recorder:
    def __init__(self):
        self.restarts = 0
        self.broadcasts = []

    def restart(self):
        self.restarts += 1

    def broadcast(self, text):
        self.broadcasts.append(text)


def make_supervisor(cameras, detector, registry, recorder):
    return Supervisor(cameras, detector, registry, restart=recorder.restart, broadcast=recorder.broadcast)


def mark_slowly(registry, clock, ticks, per_second=1):
    for _ in range(ticks):
        registry.main_ticker.mark(per_second)
        clock.advance(1.0)


class TestModeSwitch:
    """Test following the stored mode"""

    def test_turns_on_and_toggles_feeds_once(self, make_camera, detector, registry):
        cameras = [make_camera(0, active=False), make_camera(1, active=False)]
        for camera in cameras:
            camera.store.set_mode(UPLOAD_SCHED, ScheduleMode.ON)
        supervisor = make_supervisor(cameras, detector, registry, Recorder())

        assert supervisor.check_mode_switch()
        assert all(camera.is_active() for camera in cameras)
        assert detector.toggle_calls == 1
        assert cameras[0].notifier.texts == ["Detector changed state: ON"]

    def test_turns_off(self, make_camera, detector, registry):
        camera = make_camera(0, active=True)
        camera.store.set_mode(UPLOAD_SCHED, ScheduleMode.OFF)
        supervisor = make_supervisor([camera], detector, registry, Recorder())

        supervisor.check_mode_switch()
        assert not camera.is_active()
        assert camera.notifier.texts == ["Detector changed state: OFF"]

    def test_no_change_no_toggle(self, make_camera, detector, registry):
        camera = make_camera(0, active=True)
        camera.store.set_mode(UPLOAD_SCHED, ScheduleMode.ON)
        supervisor = make_supervisor([camera], detector, registry, Recorder())

        assert not supervisor.check_mode_switch()
        assert detector.toggle_calls == 0
        assert camera.notifier.texts == []

    def test_feed_error_is_logged(self, make_camera, detector, registry):
        camera = make_camera(0, active=False)
        camera.store.set_mode(UPLOAD_SCHED, ScheduleMode.ON)
        detector.toggle_error = FeedError("no stream")
        supervisor = make_supervisor([camera], detector, registry, Recorder())

        assert supervisor.check_mode_switch()
        assert camera.is_active()


class TestMainTicker:
    """Test the stalled pipeline watchdog"""

    def test_slow_ticker_halts_exactly_once(self, make_camera, detector, registry, clock):
        recorder = Recorder()
        supervisor = make_supervisor([make_camera(0)], detector, registry, recorder)
        mark_slowly(registry, clock, 610)

        assert supervisor.check_main_ticker()
        assert not supervisor.check_main_ticker()
        assert recorder.restarts == 1
        assert len(recorder.broadcasts) == 1
        assert recorder.broadcasts[0].startswith("Frame rate too low: ")
        assert recorder.broadcasts[0].endswith(", halting!")

    def test_not_armed_before_600_ticks(self, make_camera, detector, registry, clock):
        recorder = Recorder()
        supervisor = make_supervisor([make_camera(0)], detector, registry, recorder)
        mark_slowly(registry, clock, 600)

        assert not supervisor.check_main_ticker()
        assert recorder.restarts == 0

    def test_healthy_rate_does_not_halt(self, make_camera, detector, registry, clock):
        recorder = Recorder()
        supervisor = make_supervisor([make_camera(0)], detector, registry, recorder)
        mark_slowly(registry, clock, 300, per_second=5)

        assert not supervisor.check_main_ticker()
        assert recorder.restarts == 0


class TestRun:
    """Test the supervisor loop"""

    def test_checks_immediately_and_stops(self, make_camera, detector, registry):
        camera = make_camera(0, active=False)
        camera.store.set_mode(UPLOAD_SCHED, ScheduleMode.ON)
        supervisor = Supervisor([camera], detector, registry, restart=lambda: None, broadcast=lambda text: None, interval=0.05)
        stop_event = threading.Event()
        worker = threading.Thread(target=supervisor.run, args=(stop_event,))
        worker.start()
        try:
            time.sleep(0.2)
        finally:
            stop_event.set()
            worker.join(timeout=2)
        assert not worker.is_alive()
        assert camera.is_active()
        assert registry.supervisor_tick.count() >= 1
