from __future__ import annotations

# Client helpers.
#
# A client call is a short-lived exchange:
# - connect to broker
# - publish a request on the queue request topic
# - wait for the correlated response on a dedicated topic
# - disconnect
#
# `watch()` instead stays connected and prints a salon's or a user's event
# stream. On connect and on every reconnect it first asks for a full snapshot,
# because the stream gives no delivery guarantee across a disconnect gap.

import threading
import time
from typing import Any, Callable

from .mqtt_client import MqttClient
from .mqtt_topics import queue_requests, queue_responses, salon_events, user_events


def send_request(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    message: dict[str, Any],
    timeout: float = 5.0,
) -> dict[str, Any]:
    # Use a unique client id so many clients can run concurrently.
    client_id = f"client-{message.get('type', 'req')}-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    mqtt.start()

    reply_topic = queue_responses(client_id, namespace)
    mqtt.subscribe(reply_topic)

    try:
        return mqtt.request(
            request_topic=queue_requests(namespace),
            response_topic=reply_topic,
            message=message,
            timeout=timeout,
        )
    finally:
        mqtt.stop()


class EventStreamTracker:
    """Remembers the last `seq` seen per salon on one event stream.

    A salon stream carries every event of that salon, so a jump in `seq`
    means events were lost and `gap` is set. A user stream only carries
    that user's share of each salon's events, so jumps are normal there and
    only redeliveries are filtered out.
    """

    def __init__(self, *, detect_gaps: bool) -> None:
        self.detect_gaps = detect_gaps
        self.gap = threading.Event()
        self._lock = threading.Lock()
        self._last_seq: dict[str, int] = {}

    def reset(self, salon_id: str, seq: int) -> None:
        """Record the seq a fresh snapshot matches. Never moves backwards."""
        with self._lock:
            self._last_seq[salon_id] = max(seq, self._last_seq.get(salon_id, seq))

    def accept(self, msg: dict[str, Any]) -> bool:
        """False for a message already seen; anything without a seq passes."""
        sid = msg.get("salon_id")
        seq = msg.get("seq")
        if not isinstance(sid, str) or not isinstance(seq, int):
            return True
        with self._lock:
            last = self._last_seq.get(sid)
            if last is not None and seq <= last:
                return False
            if self.detect_gaps and last is not None and seq > last + 1:
                self.gap.set()
            self._last_seq[sid] = seq
        return True


def watch(
    *,
    mqtt_host: str,
    mqtt_port: int,
    namespace: str,
    token: str,
    on_event: Callable[[dict[str, Any]], None],
    salon_id: str | None = None,
    user_id: str | None = None,
) -> None:
    """Print events until interrupted.

    State is re-read at start, after every reconnect and, on a salon stream,
    whenever a gap in `seq` shows up.
    """
    if salon_id is None and user_id is None:
        raise ValueError("watch needs a salon_id or a user_id")

    client_id = f"watch-{int(time.time() * 1000)}"
    mqtt = MqttClient(client_id=client_id, host=mqtt_host, port=mqtt_port)
    reply_topic = queue_responses(client_id, namespace)
    tracker = EventStreamTracker(detect_gaps=salon_id is not None)

    def resync() -> None:
        if salon_id is not None:
            message = {"type": "queue_snapshot", "token": token, "salon_id": salon_id}
        else:
            message = {"type": "my_entries", "token": token}
        state = mqtt.request(request_topic=queue_requests(namespace), response_topic=reply_topic, message=message)
        if salon_id is not None and isinstance(state.get("seq"), int):
            tracker.reset(salon_id, state["seq"])
        on_event(state)

    # Runs on the MQTT network thread: it must not block on a request.
    def handle(topic: str, msg: dict[str, Any]) -> None:
        if tracker.accept(msg):
            on_event(msg)

    mqtt.add_handler(handle)
    mqtt.add_reconnect_listener(tracker.gap.set)
    mqtt.start()
    mqtt.subscribe(reply_topic)
    mqtt.subscribe(salon_events(salon_id, namespace) if salon_id else user_events(str(user_id), namespace))

    try:
        resync()
        while True:
            if tracker.gap.wait(timeout=1.0):
                tracker.gap.clear()
                resync()
    except KeyboardInterrupt:
        pass
    finally:
        mqtt.stop()
