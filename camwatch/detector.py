from __future__ import annotations

"""Frame capture and object detection around OpenCV and Ultralytics YOLO."""

import logging
import os
import threading
import time
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import cv2
import numpy as np

from camwatch.camera import Camera
from camwatch.frame import Box, FrameDetectResult, Rect

logger = logging.getLogger(__name__)

HIT_COLOR = (0, 220, 0)
CROP_COLOR = (0, 165, 255)
ROI_COLOR = (255, 0, 0)


class CameraInactiveError(Exception):
    """The camera feed is closed because the camera is switched off."""


class FrameReadError(Exception):
    """Reading from an open feed failed; the pipeline cannot continue."""


class FeedError(Exception):
    """Opening a camera feed failed."""


class Detector(Protocol):
    """Frame source plus object detector for all cameras."""

    def toggle_feeds(self) -> None:
        ...

    def detect_next_frame(self, index: int) -> Optional[FrameDetectResult]:
        ...

    def snapshot(self, index: int) -> bytes:
        ...

    def annotate(self, index: int) -> Tuple[str, bytes]:
        ...

    def close(self) -> None:
        ...


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise FrameReadError("JPEG encoding failed")
    return buf.tobytes()


def crop_frame(frame: np.ndarray, crop: Optional[Rect]) -> np.ndarray:
    """Return the crop region of `frame`, clamped to the frame bounds."""
    if crop is None:
        return frame
    height, width = frame.shape[:2]
    x1, y1 = max(0, crop.x1), max(0, crop.y1)
    x2, y2 = min(width, crop.x2), min(height, crop.y2)
    return frame[y1:y2, x1:x2]


def draw_rect(image: np.ndarray, rect: Rect, color: Tuple[int, int, int], label: str = "") -> None:
    cv2.rectangle(image, (rect.x1, rect.y1), (rect.x2, rect.y2), color, 2)
    if label:
        cv2.putText(
            image,
            label,
            (rect.x1, max(20, rect.y1 - 10)),
            cv2.FONT_HERSHEY_SIMPLEX,
            0.6,
            color,
            2,
            cv2.LINE_AA,
        )


class YoloDetector:
    """Owns one OpenCV capture per active camera and a shared YOLO model.

    Feeds are opened and released by `toggle_feeds()` to follow each
    camera's active flag. Box coordinates are relative to the camera's crop
    rectangle, which is also the frame the ROI is expressed in.
    """

    def __init__(self, cameras: Sequence[Camera], model_name: str, feed_open_delay: float = 3.0) -> None:
        """Load the YOLO model once; feeds stay closed until `toggle_feeds()`."""
        # Imported here so the rest of the package does not pull in torch.
        from ultralytics import YOLO

        self.cameras = list(cameras)
        self.model = YOLO(model_name)
        self.feed_open_delay = feed_open_delay
        self._feeds: Dict[int, cv2.VideoCapture] = {}
        self._lock = threading.Lock()

    def _open_feed(self, camera: Camera) -> cv2.VideoCapture:
        """Open the capture handle, using FFmpeg over TCP for RTSP URIs."""
        if camera.capture_uri.startswith("rtsp://"):
            os.environ["OPENCV_FFMPEG_CAPTURE_OPTIONS"] = "rtsp_transport;tcp"
            capture = cv2.VideoCapture(camera.capture_uri, cv2.CAP_FFMPEG)
        else:
            capture = cv2.VideoCapture(camera.capture_uri)
        if not capture.isOpened():
            capture.release()
            raise FeedError(f"Could not open feed for {camera.name}")
        capture.set(cv2.CAP_PROP_BUFFERSIZE, 1)
        return capture

    def toggle_feeds(self) -> None:
        """Open feeds of active cameras and release feeds of inactive ones."""
        with self._lock:
            for camera in self.cameras:
                feed = self._feeds.get(camera.index)
                if camera.is_active() and feed is None:
                    logger.info("Opening feed for %s", camera.name)
                    self._feeds[camera.index] = self._open_feed(camera)
                    # Some DVRs refuse a second stream opened back to back.
                    time.sleep(self.feed_open_delay)
                elif not camera.is_active() and feed is not None:
                    logger.info("Closing feed for %s", camera.name)
                    feed.release()
                    del self._feeds[camera.index]

    def _read(self, index: int) -> np.ndarray:
        with self._lock:
            feed = self._feeds.get(index)
            if feed is None:
                raise CameraInactiveError(f"{self.cameras[index].name} feed is not open")
            ok, frame = feed.read()
        if not ok or frame is None:
            raise FrameReadError(f"Failed to read frame from {self.cameras[index].name}")
        return frame

    def _predict(self, image: np.ndarray) -> List[Box]:
        results = self.model.predict(image, verbose=False)
        if not results:
            return []
        result = results[0]
        boxes: List[Box] = []
        if result.boxes is None:
            return boxes
        for det in result.boxes:
            class_id = int(det.cls[0])
            confidence = int(round(float(det.conf[0]) * 100))
            x1, y1, x2, y2 = map(int, det.xyxy[0].tolist())
            coords = Rect(x1, y1, x2, y2)
            if coords.is_empty():
                continue
            crop = image[max(0, y1):y2, max(0, x1):x2]
            boxes.append(
                Box(
                    label=str(result.names[class_id]).lower(),
                    confidence=confidence,
                    coords=coords,
                    jpeg_bytes=encode_jpeg(crop),
                )
            )
        return boxes

    def detect_next_frame(self, index: int) -> Optional[FrameDetectResult]:
        """Read, crop and detect one frame; `None` when nothing was found."""
        camera = self.cameras[index]
        image = crop_frame(self._read(index), camera.crop)
        boxes = self._predict(image)
        if not boxes:
            return None
        annotated = image.copy()
        for box in boxes:
            draw_rect(annotated, box.coords, HIT_COLOR, box.label_confidence())
        return FrameDetectResult(boxes=boxes, jpeg_bytes=encode_jpeg(annotated))

    def snapshot(self, index: int) -> bytes:
        return encode_jpeg(self._read(index))

    def annotate(self, index: int) -> Tuple[str, bytes]:
        """Return a caption and the raw frame with crop and ROI drawn on it."""
        camera = self.cameras[index]
        frame = self._read(index)
        height, width = frame.shape[:2]
        caption = f"{camera.name}: {width}x{height}"
        if camera.crop is not None:
            draw_rect(frame, camera.crop, CROP_COLOR, "crop")
            caption += f", crop {camera.crop}"
        if camera.roi is not None:
            offset_x = camera.crop.x1 if camera.crop else 0
            offset_y = camera.crop.y1 if camera.crop else 0
            roi = Rect(
                camera.roi.x1 + offset_x,
                camera.roi.y1 + offset_y,
                camera.roi.x2 + offset_x,
                camera.roi.y2 + offset_y,
            )
            draw_rect(frame, roi, ROI_COLOR, "roi")
            caption += f", roi {camera.roi}"
        return caption, encode_jpeg(frame)

    def close(self) -> None:
        """Release every open capture handle."""
        with self._lock:
            for feed in self._feeds.values():
                feed.release()
            self._feeds.clear()
