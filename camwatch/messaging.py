from __future__ import annotations

"""External message-bus listener used for alarm-panel control messages."""

import json
import logging
import ssl
import threading
from typing import Callable, Protocol
from urllib.parse import urlparse

from paho.mqtt.client import CallbackAPIVersion, Client

logger = logging.getLogger(__name__)

MessageHandlerFn = Callable[[str], None]


def decode_payload(payload: bytes) -> str:
    """Return the message text of a bus payload.

    JSON envelopes of the form `{"data": {"message": "..."}}` are unwrapped;
    anything else is decoded as plain UTF-8 text.
    """
    text = payload.decode("utf-8", errors="replace")
    try:
        decoded = json.loads(text)
    except ValueError:
        return text
    if isinstance(decoded, dict):
        data = decoded.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
    return text


class Messenger(Protocol):
    def run_listener(self, stop_event: threading.Event, on_message: MessageHandlerFn) -> None:
        ...


class NoopMessenger:
    """Used when the message bus is disabled."""

    def run_listener(self, stop_event: threading.Event, on_message: MessageHandlerFn) -> None:
        logger.info("Message bus disabled, not listening")


class MqttMessenger:
    """Subscribe to one MQTT topic and hand each message's text to a callback."""

    def __init__(self, url: str, topic: str, username: str = "", password: str = "", client_id: str = "camwatch") -> None:
        self.url = url
        self.topic = topic
        self.username = username
        self.password = password
        self.client_id = client_id

    def _build_client(self, on_message: MessageHandlerFn) -> Client:
        parsed = urlparse(self.url)
        scheme = (parsed.scheme or "mqtt").lower()
        host = parsed.hostname or "localhost"
        port = parsed.port or (8883 if scheme in ("mqtts", "ssl", "tls") else 1883)

        client = Client(client_id=self.client_id, callback_api_version=CallbackAPIVersion.VERSION2)
        if self.username:
            client.username_pw_set(self.username, self.password or None)
        if scheme in ("mqtts", "ssl", "tls"):
            client.tls_set_context(ssl.create_default_context())

        def _on_connect(client, userdata, flags, reason_code, properties=None):
            if reason_code.is_failure:
                logger.error("MQTT connect failed: %s", reason_code)
                return
            logger.info("MQTT connected to %s:%d, subscribing to %s", host, port, self.topic)
            client.subscribe(self.topic, qos=1)

        def _on_disconnect(client, userdata, flags, reason_code, properties=None):
            logger.warning("MQTT disconnected: %s", reason_code)

        def _on_message(client, userdata, message):
            text = decode_payload(message.payload)
            logger.info("Got bus message on %s: %s", message.topic, text)
            try:
                on_message(text)
            except Exception:
                logger.exception("Bus message handler failed for %r", text)

        client.on_connect = _on_connect
        client.on_disconnect = _on_disconnect
        client.on_message = _on_message
        client.connect_async(host, port, keepalive=30)
        return client

    def run_listener(self, stop_event: threading.Event, on_message: MessageHandlerFn) -> None:
        """Listen until `stop_event` is set; paho reconnects on its own."""
        client = self._build_client(on_message)
        client.loop_start()
        try:
            stop_event.wait()
        finally:
            client.loop_stop()
            client.disconnect()
            logger.info("MQTT listener stopped")
