from __future__ import annotations

"""Per-camera runtime state: policy, limiter, transport, store and the active flag."""

import threading
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

from camwatch.config import CameraSettings
from camwatch.frame import Rect, RejectionPolicy, rect_for_roi
from camwatch.notifier import Notifier
from camwatch.ratelimit import Clock, NotificationLimiter
from camwatch.store import ScheduleStore

DEFAULT_MIN_CONFIDENCE = 15


def strip_credentials(uri: str) -> str:
    """Drop `user:password@` from a URI so it can be shown to operators."""
    parts = urlsplit(uri)
    if not parts.netloc or "@" not in parts.netloc:
        return uri
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))


class Camera:
    """One monitored feed and everything needed to notify about it."""

    def __init__(
        self,
        settings: CameraSettings,
        notifier: Notifier,
        store: ScheduleStore,
        clock: Optional[Clock] = None,
    ) -> None:
        self.index = settings.index
        self.name = settings.name
        self.capture_uri = settings.capture_uri
        self.notifier = notifier
        self.store = store
        self.limiter = NotificationLimiter(clock) if clock is not None else NotificationLimiter()
        self.send_rejected = settings.send_rejected
        self.mqtt_control = settings.mqtt_control

        self.crop = rect_for_roi(*settings.crop)
        self.roi = rect_for_roi(*settings.roi)
        # ROI coordinates are relative to the cropped frame.
        if self.crop is not None and self.roi is not None:
            bounds = Rect(0, 0, self.crop.width, self.crop.height)
            if not self.roi.inside(bounds):
                raise ValueError(f"{self.name}: ROI {self.roi} does not fit inside crop {bounds}")

        self.policy = RejectionPolicy(
            min_width=settings.min_width,
            min_height=settings.min_height,
            max_width=settings.max_width,
            max_height=settings.max_height,
            require_portrait=settings.require_portrait,
            roi=self.roi,
            min_confidence=settings.min_confidence or DEFAULT_MIN_CONFIDENCE,
        )

        self._active_lock = threading.Lock()
        self._active = False

    def is_active(self) -> bool:
        with self._active_lock:
            return self._active

    def set_active(self, active: bool) -> None:
        with self._active_lock:
            self._active = active

    def tokens_remaining(self) -> str:
        return self.limiter.tokens_remaining()

    def params(self) -> Dict[str, str]:
        """Operator-facing parameters, with credentials removed from the capture URI."""
        return {
            "name": self.name,
            "uri": strip_credentials(self.capture_uri),
            "crop": str(self.crop) if self.crop else "none",
            "roi": str(self.roi) if self.roi else "none",
            "min_width": str(self.policy.min_width),
            "min_height": str(self.policy.min_height),
            "max_width": str(self.policy.max_width),
            "max_height": str(self.policy.max_height),
            "min_confidence": str(self.policy.min_confidence),
            "require_portrait": str(self.policy.require_portrait),
            "send_rejected": str(self.send_rejected),
            "mqtt_control": str(self.mqtt_control),
        }

    def __repr__(self) -> str:
        return f"Camera(index={self.index}, name={self.name!r})"
