from __future__ import annotations

"""In-process metrics: counters, EWMA rate meters and value histograms.

One `MetricsRegistry` is built at startup and handed to every component that
records something. Nothing here is a module-level singleton.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

Clock = Callable[[], float]

METER_TICK_SECONDS = 5.0


def markdown_code(text: str) -> str:
    """Wrap text in a Markdown code fence for monospaced chat output."""
    return f"```\n{text}```\n"


class Counter:
    """Thread-safe monotonically increasing count."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._count = 0

    def inc(self, n: int = 1) -> None:
        with self._lock:
            self._count += n

    def count(self) -> int:
        with self._lock:
            return self._count


class _EWMA:
    """Exponentially-weighted moving average of a per-second rate."""

    def __init__(self, minutes: float) -> None:
        self.alpha = 1.0 - math.exp(-METER_TICK_SECONDS / 60.0 / minutes)
        self.rate = 0.0
        self._uncounted = 0
        self._initialized = False

    def update(self, n: int) -> None:
        self._uncounted += n

    def tick(self) -> None:
        instant_rate = self._uncounted / METER_TICK_SECONDS
        self._uncounted = 0
        if self._initialized:
            self.rate += self.alpha * (instant_rate - self.rate)
        else:
            self.rate = instant_rate
            self._initialized = True


@dataclass(frozen=True)
class MeterSnapshot:
    count: int
    rate1: float
    rate5: float
    rate15: float
    rate_mean: float


class Meter:
    """Event counter with 1/5/15-minute decaying rates.

    Rates are advanced lazily in fixed 5-second ticks whenever the meter is
    marked or read, using the injected clock.
    """

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._count = 0
        self._started_at = clock()
        self._last_tick = self._started_at
        self._m1 = _EWMA(1)
        self._m5 = _EWMA(5)
        self._m15 = _EWMA(15)

    def _tick_if_necessary(self) -> None:
        elapsed = self._clock() - self._last_tick
        if elapsed < METER_TICK_SECONDS:
            return
        ticks = int(elapsed // METER_TICK_SECONDS)
        self._last_tick += ticks * METER_TICK_SECONDS
        for _ in range(ticks):
            self._m1.tick()
            self._m5.tick()
            self._m15.tick()

    def mark(self, n: int = 1) -> None:
        with self._lock:
            self._tick_if_necessary()
            self._count += n
            self._m1.update(n)
            self._m5.update(n)
            self._m15.update(n)

    def snapshot(self) -> MeterSnapshot:
        with self._lock:
            self._tick_if_necessary()
            elapsed = self._clock() - self._started_at
            mean = self._count / elapsed if elapsed > 0 else 0.0
            return MeterSnapshot(
                count=self._count,
                rate1=self._m1.rate,
                rate5=self._m5.rate,
                rate15=self._m15.rate,
                rate_mean=mean,
            )


class HistVals:
    """Frequency table of integer observations, plotted on demand."""

    def __init__(self, title: str, buckets: int) -> None:
        self.title = title
        self.buckets = buckets
        self._lock = threading.Lock()
        self._vals: Dict[int, int] = {}

    def inc(self, value: int) -> None:
        with self._lock:
            self._vals[value] = self._vals.get(value, 0) + 1

    def values(self) -> Dict[int, int]:
        with self._lock:
            return dict(self._vals)

    def __len__(self) -> int:
        with self._lock:
            return len(self._vals)


class CameraMetrics:
    """Counters and histograms recorded for one camera."""

    def __init__(self, registry: "MetricsRegistry", name: str) -> None:
        name = name.lower()
        self.snapshot = registry.counter(f"{name}.snapshot")
        self.upload_error = registry.counter(f"{name}.upload.error")
        self.upload_success = registry.counter(f"{name}.upload.success")
        self.overview_drop = registry.counter(f"{name}.overview.drop")
        self.overview_send = registry.counter(f"{name}.overview.send")
        self.box_drop = registry.counter(f"{name}.box.drop")
        self.box_send = registry.counter(f"{name}.box.send")
        self.box_reject = registry.counter(f"{name}.box.reject")
        self.detector_error = registry.counter(f"{name}.detector.error")
        self.detector_none = registry.counter(f"{name}.detector.none")
        self.detector_hit = registry.counter(f"{name}.detector.hit")
        self.box_widths = HistVals(f"{name} Box Widths", 40)
        self.box_heights = HistVals(f"{name} Box Heights", 40)
        self.box_confidences = HistVals(f"{name} Confidences", 20)


class MetricsRegistry:
    """Named metrics shared by the scheduler, dispatcher, supervisor and commands."""

    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._counters: Dict[str, Counter] = {}
        self._meters: Dict[str, Meter] = {}
        self.cameras: List[CameraMetrics] = []

        self.main_ticker = self.meter("frame.total")
        self.frame_read = self.meter("frame.read")
        self.frame_skip = self.meter("frame.skip")
        self.supervisor_tick = self.counter("supervisor.tick")
        self.heartbeat_tick = self.counter("heartbeat.tick")
        self.heartbeat_error = self.counter("heartbeat.error")

    def counter(self, name: str) -> Counter:
        with self._lock:
            if name not in self._counters:
                self._counters[name] = Counter()
            return self._counters[name]

    def meter(self, name: str) -> Meter:
        with self._lock:
            if name not in self._meters:
                self._meters[name] = Meter(clock=self._clock)
            return self._meters[name]

    def add_camera(self, name: str) -> CameraMetrics:
        camera_metrics = CameraMetrics(self, name)
        self.cameras.append(camera_metrics)
        return camera_metrics

    def camera(self, index: int) -> CameraMetrics:
        return self.cameras[index]

    def find_counter(self, name: str) -> Optional[Counter]:
        with self._lock:
            return self._counters.get(name)

    def print_out(self) -> str:
        """Render every counter and meter, sorted by name, as a Markdown code block."""
        with self._lock:
            counters = dict(self._counters)
            meters = dict(self._meters)

        blocks: Dict[str, str] = {}
        for name, counter in counters.items():
            blocks[name] = f"{name}\n  count:       {counter.count():9d}\n"
        for name, meter in meters.items():
            snap = meter.snapshot()
            blocks[name] = (
                f"{name}\n"
                f"  count:       {snap.count:9d}\n"
                f"  1-min rate:  {snap.rate1:12.2f}\n"
                f"  5-min rate:  {snap.rate5:12.2f}\n"
                f"  15-min rate: {snap.rate15:12.2f}\n"
                f"  mean rate:   {snap.rate_mean:12.2f}\n"
            )
        return markdown_code("".join(blocks[name] for name in sorted(blocks)))
