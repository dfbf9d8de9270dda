"""
Tests for settings loading and camera construction
"""

import os

import pytest

from camwatch.camera import DEFAULT_MIN_CONFIDENCE, Camera, strip_credentials
from camwatch.config import load_settings
from camwatch.frame import Rect

from conftest import RecordingNotifier, make_camera_settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep host environment variables out of the loader."""
    for key in list(os.environ):
        if key.startswith("CAMERA") or key in {"DEBUG", "ACTIVE", "FRAME_INTERVAL_MS", "MQTT_ENABLE", "DETECT_ALERT_LABELS"}:
            monkeypatch.delenv(key, raising=False)


def write_secrets(tmp_path, text):
    path = tmp_path / ".secrets"
    path.write_text(text, encoding="utf-8")
    return str(path)


class TestLoadSettings:
    """Test `.secrets` + environment loading"""

    def test_minimal(self, tmp_path):
        settings = load_settings(write_secrets(tmp_path, "CAMERA0_NAME=Front\nCAMERA0_URL=rtsp://cam/1\n"))
        assert settings.active is True
        assert settings.debug is False
        assert settings.frame_interval_ms == 200
        assert settings.detect_alert_labels == ["person"]
        assert len(settings.cameras) == 1
        camera = settings.cameras[0]
        assert camera.name == "Front"
        assert camera.capture_uri == "rtsp://cam/1"

    def test_no_cameras(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(write_secrets(tmp_path, "DEBUG=true\n"))

    def test_name_without_url(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(write_secrets(tmp_path, "CAMERA0_NAME=Front\n"))

    def test_indices_are_dense(self, tmp_path):
        settings = load_settings(write_secrets(tmp_path, "CAMERA1_URL=rtsp://a\nCAMERA3_URL=rtsp://b\n"))
        assert [camera.index for camera in settings.cameras] == [0, 1]
        assert [camera.name for camera in settings.cameras] == ["camera1", "camera3"]
        assert [camera.slot for camera in settings.cameras] == [1, 3]

    def test_pipeline_substitution(self, tmp_path):
        settings = load_settings(
            write_secrets(
                tmp_path,
                'CAMERA0_URL=rtsp://cam/1\nCAMERA0_PIPELINE="rtspsrc location={url} ! appsink"\n',
            )
        )
        assert settings.cameras[0].capture_uri == "rtspsrc location=rtsp://cam/1 ! appsink"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("FRAME_INTERVAL_MS", "500")
        settings = load_settings(write_secrets(tmp_path, "CAMERA0_URL=rtsp://a\nFRAME_INTERVAL_MS=100\n"))
        assert settings.frame_interval_ms == 500

    def test_camera_policy_keys(self, tmp_path):
        text = "\n".join(
            [
                "# comment",
                "CAMERA0_URL=rtsp://a",
                "CAMERA0_ROI_X=10",
                "CAMERA0_ROI_Y=20",
                "CAMERA0_ROI_W=100",
                "CAMERA0_ROI_H=200",
                "CAMERA0_MIN_CONFIDENCE=40",
                "CAMERA0_REQUIRE_PORTRAIT=yes",
                "CAMERA0_MQTT_CONTROL=true",
                "DETECT_ALERT_LABELS=Person, car",
            ]
        )
        settings = load_settings(write_secrets(tmp_path, text))
        camera = settings.cameras[0]
        assert camera.roi == (10, 20, 100, 200)
        assert camera.min_confidence == 40
        assert camera.require_portrait is True
        assert camera.mqtt_control is True
        assert camera.send_rejected is False
        assert settings.detect_alert_labels == ["person", "car"]

    def test_bad_integer(self, tmp_path):
        with pytest.raises(ValueError):
            load_settings(write_secrets(tmp_path, "CAMERA0_URL=rtsp://a\nCAMERA0_MIN_WIDTH=wide\n"))


class TestCamera:
    """Test camera construction from settings"""

    def test_default_min_confidence(self, store):
        camera = Camera(make_camera_settings(), RecordingNotifier(), store)
        assert camera.policy.min_confidence == DEFAULT_MIN_CONFIDENCE

    def test_small_rectangles_are_unset(self, store):
        camera = Camera(make_camera_settings(crop=(0, 0, 10, 10), roi=(0, 0, 100, 5)), RecordingNotifier(), store)
        assert camera.crop is None
        assert camera.roi is None
        assert camera.policy.roi is None

    def test_roi_must_fit_in_crop(self, store):
        with pytest.raises(ValueError):
            Camera(make_camera_settings(crop=(100, 100, 200, 200), roi=(150, 0, 100, 100)), RecordingNotifier(), store)

    def test_roi_relative_to_crop(self, store):
        camera = Camera(make_camera_settings(crop=(100, 100, 200, 200), roi=(0, 0, 200, 200)), RecordingNotifier(), store)
        assert camera.roi == Rect(0, 0, 200, 200)

    def test_starts_inactive(self, store):
        camera = Camera(make_camera_settings(), RecordingNotifier(), store)
        assert not camera.is_active()
        camera.set_active(True)
        assert camera.is_active()

    @pytest.mark.parametrize(
        "uri,expected",
        [
            ("rtsp://user:pw@host:554/s", "rtsp://host:554/s"),
            ("rtsp://host/s", "rtsp://host/s"),
            ("rtspsrc location=x ! appsink", "rtspsrc location=x ! appsink"),
        ],
    )
    def test_strip_credentials(self, uri, expected):
        assert strip_credentials(uri) == expected
