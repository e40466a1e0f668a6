"""JSON-over-MQTT connection used by the queue service and its clients.

paho-mqtt only delivers messages through callbacks. On top of that this
module offers:

- `publish()` / `subscribe()` for JSON dict messages,
- `request()`: publish, then block until the reply carrying the same
  `corr_id` arrives on the caller's response topic.

Subscriptions are kept in a table and replayed from `on_connect`, so the
event streams survive a broker restart (paho reconnects by itself once the
network loop is running). Reconnect listeners let a consumer re-read state
it may have missed while offline. `publish()` raises `PublishError` instead of
dropping a message silently; the event fanout retries it with backoff.

Handlers run on paho's network thread and must not call `request()`.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from typing import Any, Callable

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]
ReconnectListener = Callable[[], None]


class PublishError(RuntimeError):
    """paho refused to queue the message (not connected, queue full, ...)."""


def _decode(payload: bytes | str) -> dict[str, Any] | None:
    text = payload.decode("utf-8") if isinstance(payload, bytes) else str(payload)
    data = json.loads(text)
    return data if isinstance(data, dict) else None


class MqttClient:
    def __init__(self, *, client_id: str, host: str, port: int, keepalive: int = 30) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive

        self._paho = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True)
        self._paho.on_connect = self._on_connect
        self._paho.on_message = self._on_message
        self._paho.reconnect_delay_set(min_delay=1, max_delay=30)

        self._lock = threading.Lock()
        self._handlers: list[MessageHandler] = []
        self._reconnect_listeners: list[ReconnectListener] = []
        self._connected_before = False
        self._subscriptions: dict[str, int] = {}
        self._waiting: dict[str, "queue.Queue[dict[str, Any]]"] = {}
        self._running = False

    # -------------------- lifecycle --------------------

    def start(self) -> None:
        if self._running:
            return
        self._paho.connect(self.host, self.port, keepalive=self.keepalive)
        self._paho.loop_start()
        self._running = True

    def stop(self) -> None:
        if not self._running:
            return
        self._paho.loop_stop()
        self._paho.disconnect()
        self._running = False

    # -------------------- messaging --------------------

    def add_handler(self, handler: MessageHandler) -> None:
        """Register a callback for every message that is not a pending reply."""
        with self._lock:
            self._handlers.append(handler)

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Called on the network thread each time the link comes back after a drop."""
        with self._lock:
            self._reconnect_listeners.append(listener)

    def subscribe(self, topic: str, qos: int = 1) -> None:
        with self._lock:
            self._subscriptions[topic] = qos
        self._paho.subscribe(topic, qos=qos)

    def publish(self, topic: str, message: dict[str, Any], qos: int = 1) -> None:
        body = json.dumps(message, separators=(",", ":")).encode("utf-8")
        info = self._paho.publish(topic, payload=body, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise PublishError(f"publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = 5.0,
    ) -> dict[str, Any]:
        """Send `message` and wait for its reply.

        The caller must already be subscribed to `response_topic`. Raises
        `TimeoutError` when no reply arrives within `timeout` seconds.
        """
        corr_id = uuid.uuid4().hex
        inbox: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=1)
        with self._lock:
            self._waiting[corr_id] = inbox
        try:
            self.publish(request_topic, {**message, "corr_id": corr_id, "reply_to": response_topic})
            return inbox.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError(f"no reply to {message.get('type')} within {timeout}s") from None
        finally:
            with self._lock:
                self._waiting.pop(corr_id, None)

    # -------------------- paho callbacks --------------------

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT connect to %s:%s refused: %s", self.host, self.port, reason_code)
            return
        with self._lock:
            subscriptions = list(self._subscriptions.items())
            reconnect = self._connected_before
            self._connected_before = True
            listeners = list(self._reconnect_listeners) if reconnect else []
        for topic, qos in subscriptions:
            client.subscribe(topic, qos=qos)
        logger.info("MQTT connected to %s:%s, %s subscriptions restored", self.host, self.port, len(subscriptions))
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Reconnect listener failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        try:
            data = _decode(msg.payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("Dropping malformed message on %s", msg.topic)
            return
        if data is None:
            return

        corr_id = data.get("corr_id")
        with self._lock:
            inbox = self._waiting.get(corr_id) if isinstance(corr_id, str) else None
            handlers = list(self._handlers)
        if inbox is not None:
            try:
                inbox.put_nowait(data)
            except queue.Full:
                logger.debug("Duplicate reply for %s ignored", corr_id)
            return

        for handler in handlers:
            try:
                handler(msg.topic, data)
            except Exception:
                # One failing handler must not stop the network loop.
                logger.exception("Message handler failed for topic %s", msg.topic)
