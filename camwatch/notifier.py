from __future__ import annotations

"""Telegram notification transport and command listener utilities."""

import asyncio
import logging
import threading
import time
from typing import Callable, Optional, Protocol

from telegram import Bot
from telegram.constants import ParseMode
from telegram.error import NetworkError, RetryAfter, TimedOut
from telegram.request import HTTPXRequest

from camwatch.jobs import Command

logger = logging.getLogger(__name__)

CommandHandlerFn = Callable[[Command], None]

COMMAND_PREFIXES = {"bot", "b"}


def parse_command_text(text: str, camera_index: int) -> Optional[Command]:
    """Turn `bot <noun> [verb] [object]` chat text into a `Command`.

    Returns `None` for text not addressed to the bot. The object keeps its
    case and inner spacing, noun and verb are lower-cased.
    """
    pieces = (text or "").strip().split(None, 3)
    if not pieces or pieces[0].lower() not in COMMAND_PREFIXES:
        return None
    noun = pieces[1].strip().lower() if len(pieces) > 1 else ""
    verb = pieces[2].strip().lower() if len(pieces) > 2 else ""
    obj = pieces[3].strip() if len(pieces) > 3 else ""
    return Command(camera_index=camera_index, noun=noun, verb=verb, obj=obj)


class Notifier(Protocol):
    """Outbound chat transport for one camera."""

    def send_text(self, text: str) -> bool:
        ...

    def send_image(self, data: bytes, caption: str = "", alert: bool = False) -> bool:
        ...

    def start_command_listener(self, camera_index: int, handler: CommandHandlerFn) -> None:
        ...

    def close(self) -> None:
        ...


class NoopNotifier:
    """Stand-in transport used when Telegram is not configured; only logs."""

    def __init__(self, name: str = "") -> None:
        self.name = name

    def send_text(self, text: str) -> bool:
        logger.info("Telegram not configured for %s; message: %s", self.name, text.replace("\n", " "))
        return True

    def send_image(self, data: bytes, caption: str = "", alert: bool = False) -> bool:
        logger.info(
            "Telegram not configured for %s; dropping %s image (%d bytes) caption=%r",
            self.name,
            "alert" if alert else "info",
            len(data),
            caption,
        )
        return True

    def start_command_listener(self, camera_index: int, handler: CommandHandlerFn) -> None:
        logger.info("Telegram not configured for %s; no command listener", self.name)

    def close(self) -> None:
        pass


class TelegramBot:
    """Thread-safe Telegram integration for alert images and bot commands.

    Alert images go to the alert group. Text replies, informational images
    and commands use the command group.
    """

    def __init__(self, bot_token: str, alert_chat_id: str, command_chat_id: str) -> None:
        """Initialize bot client and background asyncio loop."""
        if not bot_token or not alert_chat_id or not command_chat_id:
            raise ValueError("Telegram bot token, alert group and command group are all required")
        self.alert_chat_id = alert_chat_id
        self.command_chat_id = command_chat_id
        self._listener_thread: threading.Thread | None = None
        self._listener_stop = threading.Event()
        self._update_offset = 0
        self._send_lock = threading.Lock()

        request = HTTPXRequest(
            connection_pool_size=20,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )
        self.bot = Bot(token=bot_token, request=request)
        self._loop = asyncio.new_event_loop()
        self._loop_thread = threading.Thread(target=self._run_loop, name="telegram-loop", daemon=True)
        self._loop_thread.start()

    def _run_loop(self) -> None:
        """Run dedicated asyncio event loop for Telegram API calls."""
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _send_photo_async(self, data: bytes, caption: str, chat_id: str) -> None:
        await self.bot.send_photo(
            chat_id=chat_id,
            photo=data,
            caption=caption or None,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )

    async def _send_text_async(self, text: str) -> None:
        await self.bot.send_message(
            chat_id=self.command_chat_id,
            text=text,
            parse_mode=ParseMode.MARKDOWN,
            pool_timeout=30.0,
            connect_timeout=10.0,
            read_timeout=30.0,
            write_timeout=30.0,
        )

    async def _get_updates_async(self, offset: int):
        """Long-poll Telegram updates for command processing."""
        return await self.bot.get_updates(offset=offset, limit=100, timeout=30, allowed_updates=["message"])

    def _call_with_retry(self, coro_factory, what: str, timeout: float) -> bool:
        """Run a coroutine on the bot loop, retrying rate limits and network errors."""
        with self._send_lock:
            attempts = 3
            for attempt in range(1, attempts + 1):
                try:
                    future = asyncio.run_coroutine_threadsafe(coro_factory(), self._loop)
                    future.result(timeout=timeout)
                    return True
                except RetryAfter as exc:
                    delay = float(getattr(exc, "retry_after", 2))
                    logger.warning("Telegram rate-limited; retrying in %.1fs (attempt %d/%d)", delay, attempt, attempts)
                    time.sleep(delay)
                except (TimedOut, NetworkError) as exc:
                    delay = 1.5 * attempt
                    logger.warning(
                        "Telegram %s failed (%s); retrying in %.1fs (attempt %d/%d)",
                        what,
                        exc,
                        delay,
                        attempt,
                        attempts,
                    )
                    time.sleep(delay)
                except Exception as exc:
                    logger.exception("Unexpected Telegram error during %s: %s", what, exc)
                    return False

        logger.error("Telegram %s failed after %d attempts", what, attempts)
        return False

    def send_image(self, data: bytes, caption: str = "", alert: bool = False) -> bool:
        """Send an image to the alert group (`alert=True`) or the command group."""
        chat_id = self.alert_chat_id if alert else self.command_chat_id
        if caption:
            logger.info("Sending image with caption: '%s'", caption.replace("\n", " "))
        else:
            logger.info("Sending overview image")
        return self._call_with_retry(
            lambda: self._send_photo_async(data=data, caption=caption, chat_id=chat_id),
            what="photo send",
            timeout=90,
        )

    def send_text(self, text: str) -> bool:
        logger.info("Sending: %s", text.replace("\n", " "))
        return self._call_with_retry(lambda: self._send_text_async(text=text), what="message send", timeout=60)

    def start_command_listener(self, camera_index: int, handler: CommandHandlerFn) -> None:
        """Start long-polling commands from the command group into `handler`."""
        if self._listener_thread is not None:
            return

        def _loop() -> None:
            # Restrict command handling to the configured chat for safety.
            allowed_chat = str(self.command_chat_id).strip()
            while not self._listener_stop.is_set():
                try:
                    future = asyncio.run_coroutine_threadsafe(
                        self._get_updates_async(offset=self._update_offset),
                        self._loop,
                    )
                    updates = future.result(timeout=45)
                except Exception:
                    logger.exception("Telegram command poll failed, retrying in 5 seconds")
                    self._listener_stop.wait(timeout=5.0)
                    continue

                if updates:
                    logger.info("Got %d updates", len(updates))
                for update in updates:
                    self._update_offset = int(update.update_id) + 1
                    message = getattr(update, "message", None)
                    if message is None:
                        continue
                    incoming_chat = str(getattr(message, "chat_id", "")).strip()
                    if incoming_chat != allowed_chat:
                        logger.debug("Skipping message for chat %s, not our command group", incoming_chat)
                        continue
                    command = parse_command_text(getattr(message, "text", None) or "", camera_index)
                    if command is not None:
                        handler(command)

        self._listener_thread = threading.Thread(
            target=_loop, name=f"telegram-commands-{camera_index}", daemon=True
        )
        self._listener_thread.start()

    def close(self) -> None:
        """Stop listener/event loop threads and release resources."""
        self._listener_stop.set()
        if self._listener_thread is not None:
            self._listener_thread.join(timeout=2)
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._loop_thread.join(timeout=2)
