"""Event fanout: push queue changes to everyone watching a salon or a user.

Every committed mutation produces one `QueueChangeEvent`. Events carry a
per-salon sequence number assigned at publish time; since the store publishes
while holding the salon lock, a salon's stream is delivered in exactly the
order the store produced it. Nothing is promised across salons.

Two kinds of consumers:

- `Subscription`: an inbox (bounded `queue.Queue`) for one salon or one user.
  A subscriber that falls too far behind is closed and flagged
  `resync_required`; it should fetch a fresh snapshot and subscribe again.
- sinks: callbacks (e.g. the MQTT publisher) invoked for every event on a
  dedicated thread per sink, so slow I/O never runs under a salon lock. A
  failing sink is retried with backoff and then skipped for that event; the
  failure never reaches the caller that mutated the queue.

Reconnect: `subscribe(salon_id=..., since_seq=n)` replays buffered events
after `n`. If the buffer no longer reaches back that far the subscription
starts with `resync_required=True`.

Payloads are display hints. Consumers should treat an event as an
invalidation signal and re-read authoritative state when it matters.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .repository import retry_with_backoff

logger = logging.getLogger(__name__)


class EventType:
    QUEUE_JOIN = "queue_join"
    QUEUE_LEAVE = "queue_leave"
    QUEUE_NOTIFICATION = "queue_notification"
    CHECK_IN = "check_in"
    ARRIVAL_CONFIRMED = "arrival_confirmed"
    ARRIVAL_REJECTED = "arrival_rejected"
    SERVICE_STARTING = "service_starting"
    SERVICE_COMPLETED = "service_completed"
    NO_SHOW = "no_show"
    QUEUE_POSITION_UPDATE = "queue_position_update"
    REVIEW_SUBMITTED = "review_submitted"


@dataclass(frozen=True)
class QueueChangeEvent:
    seq: int
    type: str
    salon_id: str
    user_id: str | None = None
    entry: dict[str, Any] | None = None
    queue: list[dict[str, Any]] | None = None
    ts: float = field(default_factory=time.time)

    def to_message(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"type": self.type, "seq": self.seq, "salon_id": self.salon_id, "ts": self.ts}
        if self.user_id is not None:
            msg["user_id"] = self.user_id
        if self.entry is not None:
            msg["entry"] = self.entry
        if self.queue is not None:
            msg["queue"] = self.queue
        return msg


EventSink = Callable[[QueueChangeEvent], None]


class Subscription:
    def __init__(self, fanout: EventFanout, *, salon_id: str | None, user_id: str | None, maxsize: int) -> None:
        self.salon_id = salon_id
        self.user_id = user_id
        self.last_seq: int | None = None
        self.resync_required = False
        self.closed = False
        self._fanout = fanout
        self._inbox: "queue.Queue[QueueChangeEvent]" = queue.Queue(maxsize=maxsize)

    def matches(self, event: QueueChangeEvent) -> bool:
        if self.salon_id is not None and event.salon_id == self.salon_id:
            return True
        return self.user_id is not None and event.user_id == self.user_id

    def _offer(self, event: QueueChangeEvent) -> bool:
        try:
            self._inbox.put_nowait(event)
            return True
        except queue.Full:
            return False

    def get(self, timeout: float | None = None) -> QueueChangeEvent | None:
        """Next event, or None if none arrived within `timeout`."""
        try:
            event = self._inbox.get(timeout=timeout)
        except queue.Empty:
            return None
        self.last_seq = event.seq
        return event

    def drain(self) -> list[QueueChangeEvent]:
        events: list[QueueChangeEvent] = []
        while True:
            event = self.get(timeout=0)
            if event is None:
                return events
            events.append(event)

    def __iter__(self) -> Iterator[QueueChangeEvent]:
        while not self.closed or not self._inbox.empty():
            event = self.get(timeout=0.5)
            if event is not None:
                yield event

    def close(self) -> None:
        self._fanout.unsubscribe(self)


class _SinkWorker:
    """Delivers events to one sink on its own thread, in publish order."""

    def __init__(self, sink: EventSink, deliver: Callable[[EventSink, QueueChangeEvent], None]) -> None:
        self.sink = sink
        self._deliver = deliver
        self.pending: "queue.Queue[QueueChangeEvent | None]" = queue.Queue()
        self._thread = threading.Thread(target=self._run, name="event-sink", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while True:
            event = self.pending.get()
            try:
                if event is None:
                    return
                self._deliver(self.sink, event)
            finally:
                self.pending.task_done()

    def stop(self, timeout: float | None = None) -> None:
        self.pending.put(None)
        self._thread.join(timeout)


class EventFanout:
    def __init__(
        self,
        *,
        replay_buffer_size: int = 256,
        inbox_size: int = 1024,
        sink_retry_attempts: int = 3,
        sink_retry_delay: float = 0.05,
    ) -> None:
        self._lock = threading.Lock()
        self._subs: list[Subscription] = []
        self._sink_workers: list[_SinkWorker] = []
        self._seq: dict[str, int] = {}
        self._buffers: dict[str, deque[QueueChangeEvent]] = {}
        self._replay_buffer_size = replay_buffer_size
        self._inbox_size = inbox_size
        self._sink_retry_attempts = sink_retry_attempts
        self._sink_retry_delay = sink_retry_delay

    # -------------------- consumers --------------------

    def subscribe(
        self,
        *,
        salon_id: str | None = None,
        user_id: str | None = None,
        since_seq: int | None = None,
    ) -> Subscription:
        if salon_id is None and user_id is None:
            raise ValueError("subscribe needs a salon_id or a user_id")
        sub = Subscription(self, salon_id=salon_id, user_id=user_id, maxsize=self._inbox_size)
        with self._lock:
            if since_seq is not None and salon_id is not None:
                self._replay_into(sub, salon_id, since_seq)
            self._subs.append(sub)
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        with self._lock:
            sub.closed = True
            if sub in self._subs:
                self._subs.remove(sub)

    def add_sink(self, sink: EventSink) -> None:
        with self._lock:
            self._sink_workers.append(_SinkWorker(sink, self._deliver_to_sink))

    def flush(self) -> None:
        """Block until every sink has handled the events published so far."""
        with self._lock:
            workers = list(self._sink_workers)
        for worker in workers:
            worker.pending.join()

    def close(self, timeout: float = 5.0) -> None:
        """Deliver what is queued, then stop the sink threads."""
        with self._lock:
            workers, self._sink_workers = self._sink_workers, []
        for worker in workers:
            worker.stop(timeout)

    def last_seq(self, salon_id: str) -> int:
        with self._lock:
            return self._seq.get(salon_id, 0)

    def _replay_into(self, sub: Subscription, salon_id: str, since_seq: int) -> None:
        buffered = self._buffers.get(salon_id, ())
        current = self._seq.get(salon_id, 0)
        if since_seq >= current:
            return
        oldest = buffered[0].seq if buffered else current + 1
        if since_seq + 1 < oldest:
            sub.resync_required = True
        for event in buffered:
            if event.seq > since_seq and not sub._offer(event):
                sub.resync_required = True
                return

    # -------------------- producers --------------------

    def publish(
        self,
        event_type: str,
        salon_id: str,
        *,
        user_id: str | None = None,
        entry: dict[str, Any] | None = None,
        queue: list[dict[str, Any]] | None = None,
    ) -> QueueChangeEvent:
        """Number one event and hand it to subscribers and sink threads. Callers hold the salon lock."""
        with self._lock:
            seq = self._seq.get(salon_id, 0) + 1
            self._seq[salon_id] = seq
            event = QueueChangeEvent(
                seq=seq, type=event_type, salon_id=salon_id, user_id=user_id, entry=entry, queue=queue
            )
            buf = self._buffers.get(salon_id)
            if buf is None:
                buf = self._buffers[salon_id] = deque(maxlen=self._replay_buffer_size)
            buf.append(event)

            for sub in list(self._subs):
                if sub.matches(event) and not sub._offer(event):
                    logger.warning(
                        "Subscriber fell behind, closing for resync",
                        extra={"salon_id": salon_id, "reason": "inbox_full"},
                    )
                    sub.resync_required = True
                    sub.closed = True
                    self._subs.remove(sub)
            # Queued under the lock so every sink sees events in seq order;
            # delivery itself happens on the sink threads.
            for worker in self._sink_workers:
                worker.pending.put_nowait(event)
        return event

    def _deliver_to_sink(self, sink: EventSink, event: QueueChangeEvent) -> None:
        try:
            retry_with_backoff(
                lambda: sink(event),
                attempts=self._sink_retry_attempts,
                base_delay=self._sink_retry_delay,
                retry_on=(Exception,),
            )
        except Exception:
            logger.exception(
                "Event delivery failed after retries",
                extra={"salon_id": event.salon_id, "reason": event.type},
            )
