from __future__ import annotations

"""Detection results and the per-camera rejection pipeline.

A frame yields a `FrameDetectResult` holding one `Box` per detection. Policy
filters mark boxes with a human-readable `reject_reason`; a box that keeps an
empty reason after all filters is a hit. Filters never overwrite a reason set
by an earlier filter, so the first rejection wins and reruns are stable.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

# Rectangles narrower or shorter than this are treated as "not configured".
MIN_RECT_SIDE_PX = 20


@dataclass(frozen=True)
class Rect:
    """Half-open pixel rectangle `[x1, x2) x [y1, y2)`."""

    x1: int
    y1: int
    x2: int
    y2: int

    @classmethod
    def from_xywh(cls, x: int, y: int, width: int, height: int) -> "Rect":
        return cls(x, y, x + width, y + height)

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def inside(self, other: "Rect") -> bool:
        """Return whether this rectangle lies entirely within `other`."""
        if self.is_empty():
            return True
        return (
            other.x1 <= self.x1
            and other.y1 <= self.y1
            and self.x2 <= other.x2
            and self.y2 <= other.y2
        )

    def __str__(self) -> str:
        return f"({self.x1},{self.y1})-({self.x2},{self.y2})"


def rect_for_roi(x: int, y: int, width: int, height: int) -> Optional[Rect]:
    """Build a crop/ROI rectangle, or `None` when the area is too small to mean anything."""
    if width < MIN_RECT_SIDE_PX or height < MIN_RECT_SIDE_PX:
        return None
    return Rect.from_xywh(x, y, width, height)


@dataclass
class Box:
    """One detected object within a frame."""

    label: str
    confidence: int
    coords: Rect
    jpeg_bytes: bytes = b""
    reject_reason: str = ""

    @property
    def width(self) -> int:
        return self.coords.width

    @property
    def height(self) -> int:
        return self.coords.height

    def is_portrait(self) -> bool:
        return self.width < self.height

    def is_hit(self) -> bool:
        return self.reject_reason == ""

    def label_pretty(self) -> str:
        return self.label.lower().title()

    def label_confidence(self) -> str:
        return f"{self.label_pretty()}: {self.confidence}%"


@dataclass(frozen=True)
class RejectionPolicy:
    """Per-camera acceptance rules. Zero-valued bounds disable that check."""

    min_width: int = 0
    min_height: int = 0
    max_width: int = 0
    max_height: int = 0
    require_portrait: bool = False
    roi: Optional[Rect] = None
    min_confidence: int = 0


@dataclass
class FrameDetectResult:
    """All boxes found in one frame plus the annotated full-frame JPEG."""

    boxes: List[Box] = field(default_factory=list)
    jpeg_bytes: bytes = b""

    def _unrejected(self) -> Iterable[Box]:
        return (box for box in self.boxes if box.is_hit())

    def keep_alert_labels(self, alert_labels: Iterable[str]) -> None:
        """Discard boxes whose label is not alert-worthy (not a rejection)."""
        allowed = set(alert_labels)
        kept: List[Box] = []
        for box in self.boxes:
            if box.label in allowed:
                logger.debug("label: alerting: %s", box.label)
                kept.append(box)
            else:
                logger.debug("label: ignoring: %s", box.label)
        self.boxes = kept

    def reject_size(self, min_width: int, min_height: int, max_width: int, max_height: int) -> None:
        for box in self._unrejected():
            if min_width and box.width < min_width:
                box.reject_reason = f"Rejected width: {box.width} < {min_width}, {box.label_confidence()}"
            elif min_height and box.height < min_height:
                box.reject_reason = f"Rejected height: {box.height} < {min_height}, {box.label_confidence()}"
            elif max_width and box.width > max_width:
                box.reject_reason = f"Rejected width: {box.width} > {max_width}, {box.label_confidence()}"
            elif max_height and box.height > max_height:
                box.reject_reason = f"Rejected height: {box.height} > {max_height}, {box.label_confidence()}"

    def reject_orientation(self, require_portrait: bool) -> None:
        if not require_portrait:
            return
        for box in self._unrejected():
            if not box.is_portrait():
                box.reject_reason = (
                    f"Rejected landscape: {box.width} >= {box.height}, {box.label_confidence()}"
                )

    def reject_outside_roi(self, roi: Optional[Rect]) -> None:
        if roi is None:
            return
        for box in self._unrejected():
            if not box.coords.inside(roi):
                box.reject_reason = (
                    f"Rejected bounds: {box.coords} outside ROI: {roi}, {box.label_confidence()}"
                )

    def reject_low_confidence(self, min_confidence: int) -> None:
        if not min_confidence:
            return
        for box in self._unrejected():
            if box.confidence < min_confidence:
                box.reject_reason = (
                    f"Rejected confidence: {box.confidence} below threshold: {min_confidence}, "
                    f"{box.label_confidence()}"
                )

    def hit_boxes(self) -> List[Box]:
        return [box for box in self.boxes if box.is_hit()]

    def rejected_boxes(self) -> List[Box]:
        return [box for box in self.boxes if not box.is_hit()]


def apply_policy(result: FrameDetectResult, policy: RejectionPolicy) -> FrameDetectResult:
    """Run all filters in their fixed order: size, orientation, ROI, confidence."""
    result.reject_size(policy.min_width, policy.min_height, policy.max_width, policy.max_height)
    result.reject_orientation(policy.require_portrait)
    result.reject_outside_roi(policy.roi)
    result.reject_low_confidence(policy.min_confidence)
    return result
