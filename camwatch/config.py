from __future__ import annotations

"""Configuration loading for the watcher and its cameras.

Settings come from the environment first, then a local `.secrets` file of
KEY=VALUE lines, then defaults. Cameras are numbered 0-3 and configured with
`CAMERA{i}_*` keys; a camera exists when its name or URL is set.
"""

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Tuple

MAX_CAMERAS = 4
TRUE_VALUES = {"1", "true", "yes", "on"}


def _parse_secrets_file(path: Path) -> Dict[str, str]:
    """Parse KEY=VALUE lines from the local secrets file.

    The parser is intentionally permissive:
    - ignores blank lines/comments
    - accepts surrounding whitespace around keys/values
    - strips both single and double wrapping quotes
    """
    values: Dict[str, str] = {}
    if not path.exists():
        return values

    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


@dataclass(frozen=True)
class CameraSettings:
    """Per-camera capture, policy and Telegram settings."""

    index: int
    # CAMERAn number from the config; stable when other cameras are removed
    slot: int
    name: str
    capture_uri: str
    telegram_bot_token: str
    telegram_group_alert: str
    telegram_group_command: str
    crop: Tuple[int, int, int, int]
    roi: Tuple[int, int, int, int]
    min_width: int
    min_height: int
    max_width: int
    max_height: int
    min_confidence: int
    require_portrait: bool
    send_rejected: bool
    mqtt_control: bool


@dataclass(frozen=True)
class Settings:
    """Runtime settings loaded from environment and/or `.secrets`."""

    debug: bool
    active: bool
    frame_interval_ms: int
    supervisor_interval_seconds: float
    sqlite_db_dir: Path
    detect_model: str
    detect_alert_labels: List[str]
    heartbeat_url: str
    mqtt_enable: bool
    mqtt_url: str
    mqtt_topic: str
    mqtt_username: str
    mqtt_password: str
    cameras: List[CameraSettings]


def _get_env(name: str, file_values: Dict[str, str], default: str = "") -> str:
    """Read a setting from env first, then file, then default."""
    return os.getenv(name, file_values.get(name, default)).strip()


def _get_bool(name: str, file_values: Dict[str, str], default: bool = False) -> bool:
    raw = _get_env(name, file_values, "true" if default else "false")
    return raw.lower() in TRUE_VALUES


def _get_int(name: str, file_values: Dict[str, str], default: int = 0) -> int:
    raw = _get_env(name, file_values, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _parse_labels(raw: str) -> List[str]:
    """Parse comma-separated detector labels, e.g. `person,car`."""
    return [label.strip().lower() for label in raw.split(",") if label.strip()]


def _load_camera(index: int, file_values: Dict[str, str]) -> CameraSettings | None:
    prefix = f"CAMERA{index}_"
    name = _get_env(prefix + "NAME", file_values)
    url = _get_env(prefix + "URL", file_values)
    if not name and not url:
        return None
    if not url:
        raise ValueError(f"{prefix}URL is required for camera {index} ({name})")

    pipeline = _get_env(prefix + "PIPELINE", file_values, "{url}")
    capture_uri = pipeline.replace("{url}", url, 1)

    def rect(kind: str) -> Tuple[int, int, int, int]:
        return (
            _get_int(f"{prefix}{kind}_X", file_values),
            _get_int(f"{prefix}{kind}_Y", file_values),
            _get_int(f"{prefix}{kind}_W", file_values),
            _get_int(f"{prefix}{kind}_H", file_values),
        )

    return CameraSettings(
        index=index,
        slot=index,
        name=name or f"camera{index}",
        capture_uri=capture_uri,
        telegram_bot_token=_get_env(prefix + "TELEGRAM_BOT_TOKEN", file_values),
        telegram_group_alert=_get_env(prefix + "TELEGRAM_GROUP_ALERT", file_values),
        telegram_group_command=_get_env(prefix + "TELEGRAM_GROUP_COMMAND", file_values),
        crop=rect("CROP"),
        roi=rect("ROI"),
        min_width=_get_int(prefix + "MIN_WIDTH", file_values),
        min_height=_get_int(prefix + "MIN_HEIGHT", file_values),
        max_width=_get_int(prefix + "MAX_WIDTH", file_values),
        max_height=_get_int(prefix + "MAX_HEIGHT", file_values),
        min_confidence=_get_int(prefix + "MIN_CONFIDENCE", file_values),
        require_portrait=_get_bool(prefix + "REQUIRE_PORTRAIT", file_values),
        send_rejected=_get_bool(prefix + "SEND_REJECTED", file_values),
        mqtt_control=_get_bool(prefix + "MQTT_CONTROL", file_values),
    )


def load_settings(secrets_path: str = ".secrets") -> Settings:
    """Load and validate app settings.

    At least one camera is required and raises `ValueError` when missing,
    while operational tuning flags fall back to safe defaults.
    """
    file_values = _parse_secrets_file(Path(secrets_path))

    cameras: List[CameraSettings] = []
    for index in range(MAX_CAMERAS):
        camera = _load_camera(index, file_values)
        if camera is not None:
            # Cameras are addressed by list position, so keep indices dense.
            cameras.append(replace(camera, index=len(cameras)))
    if not cameras:
        raise ValueError(
            "No cameras configured. Set CAMERA0_NAME and CAMERA0_URL in .secrets or environment."
        )

    return Settings(
        debug=_get_bool("DEBUG", file_values),
        active=_get_bool("ACTIVE", file_values, default=True),
        frame_interval_ms=_get_int("FRAME_INTERVAL_MS", file_values, 200) or 200,
        supervisor_interval_seconds=float(_get_env("SUPERVISOR_INTERVAL_SECONDS", file_values, "5")),
        sqlite_db_dir=Path(_get_env("SQLITE_DB_DIR", file_values, "data")),
        detect_model=_get_env("DETECT_MODEL", file_values, "yolov8n.pt"),
        detect_alert_labels=_parse_labels(_get_env("DETECT_ALERT_LABELS", file_values, "person")),
        heartbeat_url=_get_env("HEARTBEAT_URL", file_values),
        mqtt_enable=_get_bool("MQTT_ENABLE", file_values),
        mqtt_url=_get_env("MQTT_URL", file_values, "mqtt://localhost:1883"),
        mqtt_topic=_get_env("MQTT_TOPIC", file_values, "camwatch/control"),
        mqtt_username=_get_env("MQTT_USERNAME", file_values),
        mqtt_password=_get_env("MQTT_PASSWORD", file_values),
        cameras=cameras,
    )
