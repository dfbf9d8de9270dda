from __future__ import annotations

import logging
import re
import signal
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path

from camwatch.app import WatchApp
from camwatch.config import load_settings


class _SensitiveDataFilter(logging.Filter):
    """Redact sensitive Telegram bot token fragments from log messages."""

    _TELEGRAM_BOT_PATH_RE = re.compile(r"(https://api\.telegram\.org/bot)[^/\s]+")

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = self._TELEGRAM_BOT_PATH_RE.sub(r"\1<redacted>", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def setup_logging(debug: bool = False) -> None:
    """Configure console + rotating file logging."""
    log_dir = Path("logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "camwatch.log"
    level = logging.DEBUG if debug else logging.INFO

    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(_SensitiveDataFilter())

    file_handler = RotatingFileHandler(
        filename=str(log_file),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(_SensitiveDataFilter())

    root.addHandler(stream_handler)
    root.addHandler(file_handler)

    # Avoid third-party HTTP request logging that can leak full Telegram URLs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def main() -> None:
    settings = load_settings(".secrets")
    setup_logging(settings.debug)

    if not settings.active:
        logging.warning("ACTIVE is false, not starting; sleeping until stopped")
        threading.Event().wait()
        return

    app = WatchApp(settings)

    def _on_signal(signum, frame) -> None:
        logging.info("Received signal %d, shutting down", signum)
        app.cancel_and_exit()

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGHUP, _on_signal)
    app.run()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logging.info("Interrupted by user, exiting.")
