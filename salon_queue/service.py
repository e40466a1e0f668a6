from __future__ import annotations

# MQTT adapter around the QueueEngine.
#
# IMPORTANT: this module has two layers:
# 1) `QueueRequestHandler` (message -> engine call -> reply dict; no network,
#    easy to unit test)
# 2) `MqttQueueService` + `main()` (integration with the MQTT broker, event
#    streams and the lifecycle sweep thread)

import argparse
import logging
import time
from dataclasses import asdict
from typing import Any, Callable, TYPE_CHECKING

from .directory import IdentityProvider, Session
from .engine import QueueEngine
from .errors import QueueError, ValidationError
from .fanout import QueueChangeEvent
from .mqtt_topics import queue_requests, salon_events, user_events
from .verification import CheckInAttempt

if TYPE_CHECKING:
    from .mqtt_client import MqttClient

logger = logging.getLogger(__name__)

Handler = Callable[[Session, dict[str, Any]], dict[str, Any]]


def _required_str(msg: dict[str, Any], key: str) -> str:
    value = msg.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{key} required")
    return value


def _optional_float(msg: dict[str, Any], key: str) -> float | None:
    value = msg.get(key)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number") from None


class QueueRequestHandler:
    """Dispatch request messages to engine operations (testable without MQTT)."""

    def __init__(self, engine: QueueEngine, identities: IdentityProvider) -> None:
        self.engine = engine
        self.identities = identities
        self._handlers: dict[str, Handler] = {
            "join_queue": self._join,
            "leave_queue": self._leave,
            "check_in": self._check_in,
            "staff_advance": self._advance,
            "staff_complete": self._complete,
            "staff_confirm": self._confirm,
            "staff_notify": self._notify,
            "submit_review": self._review,
            "queue_snapshot": self._snapshot,
            "my_entries": self._my_entries,
            "reputation": self._reputation,
            "check_in_history": self._check_in_history,
        }

    def handle(self, msg: dict[str, Any]) -> dict[str, Any]:
        mtype = msg.get("type")
        handler = self._handlers.get(mtype) if isinstance(mtype, str) else None
        try:
            if handler is None:
                raise ValidationError(f"unknown request type: {mtype}")
            session = self.identities.session(msg.get("token"))
            return handler(session, msg)
        except QueueError as e:
            logger.info("Request rejected", extra={"event": mtype, "reason": e.code})
            return e.to_response().to_message()
        except Exception:
            logger.exception("Request failed", extra={"event": mtype})
            return QueueError().to_response().to_message()

    # -------- customer requests --------

    def _join(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        service_ids = msg.get("service_ids")
        if not isinstance(service_ids, list) or not all(isinstance(s, str) for s in service_ids):
            raise ValidationError("service_ids must be a list of ids")
        entry = self.engine.join_queue(session, _required_str(msg, "salon_id"), service_ids)
        return {"type": "joined", "entry": entry.to_dict()}

    def _leave(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        entry_id = _required_str(msg, "entry_id")
        self.engine.leave_queue(session, entry_id)
        return {"type": "left", "entry_id": entry_id}

    def _check_in(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        attempt = CheckInAttempt(
            latitude=_optional_float(msg, "latitude"),
            longitude=_optional_float(msg, "longitude"),
            accuracy_meters=_optional_float(msg, "accuracy"),
        )
        result = self.engine.submit_check_in(session, _required_str(msg, "entry_id"), attempt)
        return result.to_message()

    def _review(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.engine.mark_review_submitted(session, _required_str(msg, "entry_id"))
        return {"type": "review_recorded", "entry": entry.to_dict()}

    def _my_entries(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        entries = self.engine.my_entries(session, active_only=not msg.get("include_history"))
        return {"type": "my_entries", "entries": [e.to_dict() for e in entries]}

    def _reputation(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        user_id = msg.get("user_id")
        if user_id is not None and (not isinstance(user_id, str) or not user_id):
            raise ValidationError("user_id must be a non-empty string")
        reputation = self.engine.reputation(session, user_id)
        return {"type": "reputation", **reputation.to_dict()}

    def _check_in_history(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        entry_id = _required_str(msg, "entry_id")
        attempts = self.engine.check_in_history(session, entry_id)
        return {"type": "check_in_history", "entry_id": entry_id, "attempts": [asdict(a) for a in attempts]}

    def _snapshot(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        return self.engine.resync(_required_str(msg, "salon_id"))

    # -------- staff requests --------

    def _advance(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.engine.staff_advance(session, _required_str(msg, "salon_id"))
        return {"type": "service_started", "entry": entry.to_dict()}

    def _complete(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        entry = self.engine.staff_complete_service(session, _required_str(msg, "entry_id"))
        return {"type": "service_completed", "entry": entry.to_dict()}

    def _confirm(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        confirmed = msg.get("confirmed")
        if not isinstance(confirmed, bool):
            raise ValidationError("confirmed must be true or false")
        entry = self.engine.staff_confirm_arrival(session, _required_str(msg, "entry_id"), confirmed)
        return {"type": "arrival_decided", "confirmed": confirmed, "entry": entry.to_dict()}

    def _notify(self, session: Session, msg: dict[str, Any]) -> dict[str, Any]:
        minutes = msg.get("estimated_minutes")
        if minutes is not None and (isinstance(minutes, bool) or not isinstance(minutes, int)):
            raise ValidationError("estimated_minutes must be a whole number")
        entry = self.engine.staff_notify(session, _required_str(msg, "entry_id"), minutes)
        return {"type": "notified", "entry": entry.to_dict()}


class MqttQueueService:
    """MQTT adapter: request/response API plus per-salon and per-user event streams."""

    def __init__(
        self,
        *,
        mqtt: MqttClient,
        engine: QueueEngine,
        identities: IdentityProvider,
        namespace: str = "salons/v1",
    ) -> None:
        self.mqtt = mqtt
        self.namespace = namespace
        self.engine = engine
        self.handler = QueueRequestHandler(engine, identities)

    def start(self) -> None:
        self.mqtt.subscribe(queue_requests(self.namespace))
        self.mqtt.add_handler(self._handle_message)
        self.engine.store.fanout.add_sink(self.publish_event)

    def publish_event(self, event: QueueChangeEvent) -> None:
        """Fanout sink: push one event to the salon stream and the owner's stream."""
        message = event.to_message()
        self.mqtt.publish(salon_events(event.salon_id, self.namespace), message)
        if event.user_id is not None:
            self.mqtt.publish(user_events(event.user_id, self.namespace), message)

    def _handle_message(self, topic: str, msg: dict[str, Any]) -> None:
        if topic != queue_requests(self.namespace):
            return
        reply_to = msg.get("reply_to") if isinstance(msg.get("reply_to"), str) else None
        if not reply_to:
            return
        corr_id = msg.get("corr_id") if isinstance(msg.get("corr_id"), str) else None

        reply = dict(self.handler.handle(msg))
        if corr_id is not None:
            reply["corr_id"] = corr_id
        self.mqtt.publish(reply_to, reply)


def main() -> None:
    # Import MQTT dependencies only when running the real service.
    from .config import settings
    from .directory import load_seed
    from .logging_setup import configure_logging
    from .mqtt_client import MqttClient
    from .scheduler import SweepScheduler

    parser = argparse.ArgumentParser(description="Salon queue service (MQTT)")
    parser.add_argument("--seed", required=True, help="JSON file with salons and users")
    parser.add_argument("--mqtt-host", default=settings.mqtt_host)
    parser.add_argument("--mqtt-port", type=int, default=settings.mqtt_port)
    parser.add_argument("--namespace", default=settings.namespace)
    parser.add_argument(
        "--sweep-every",
        type=float,
        default=settings.sweep_interval_seconds,
        help="seconds between no-show / notification sweeps",
    )
    args = parser.parse_args()

    configure_logging(settings.log_level)

    directory, identities = load_seed(args.seed)
    engine = QueueEngine.from_settings(settings, directory)

    mqtt_client = MqttClient(client_id=f"salon-queue-{int(time.time())}", host=args.mqtt_host, port=args.mqtt_port)
    mqtt_client.start()

    service = MqttQueueService(mqtt=mqtt_client, engine=engine, identities=identities, namespace=args.namespace)
    service.start()

    scheduler = SweepScheduler(engine, interval=args.sweep_every)
    scheduler.start()

    logger.info("Connected to MQTT %s:%s, namespace=%s", args.mqtt_host, args.mqtt_port, args.namespace)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()
        engine.store.fanout.close()
        mqtt_client.stop()


if __name__ == "__main__":
    main()
