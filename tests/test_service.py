from salon_queue.directory import Identity, InMemorySalonDirectory, Salon, StaticIdentityProvider
from salon_queue.engine import QueueEngine
from salon_queue.models import Location, ServiceItem
from salon_queue.service import MqttQueueService, QueueRequestHandler
from salon_queue.store import QueueStore

NS = "test/v1"


class FakeMqtt:
    def __init__(self) -> None:
        self.subscribed: list[str] = []
        self.handlers = []
        self.published: list[tuple[str, dict]] = []

    def subscribe(self, topic: str, qos: int = 1) -> None:
        self.subscribed.append(topic)

    def add_handler(self, handler) -> None:
        self.handlers.append(handler)

    def publish(self, topic: str, message: dict, qos: int = 1) -> None:
        self.published.append((topic, message))


def _setup():
    salon = Salon(
        id="s1",
        name="Downtown",
        location=Location(40.7128, -74.0060),
        services={"cut": ServiceItem("cut", "Haircut", 30.0, 30)},
    )
    identities = StaticIdentityProvider()
    identities.register("t-alice", Identity("alice"))
    identities.register("t-bob", Identity("bob"))
    identities.register("t-sam", Identity("sam"), staff_salons=frozenset({"s1"}))
    engine = QueueEngine(store=QueueStore(), directory=InMemorySalonDirectory([salon]))
    return engine, identities


def _join(handler, token="t-alice"):
    return handler.handle({"type": "join_queue", "token": token, "salon_id": "s1", "service_ids": ["cut"]})


def test_join_and_leave_round_trip():
    h = QueueRequestHandler(*_setup())
    reply = _join(h)
    assert reply["type"] == "joined"
    assert reply["entry"]["position"] == 1
    assert reply["entry"]["status"] == "waiting"

    left = h.handle({"type": "leave_queue", "token": "t-alice", "entry_id": reply["entry"]["id"]})
    assert left == {"type": "left", "entry_id": reply["entry"]["id"]}


def test_errors_use_the_envelope():
    h = QueueRequestHandler(*_setup())
    assert h.handle({"type": "bogus", "token": "t-alice"})["code"] == "invalid_input"
    assert h.handle({"type": "my_entries"})["code"] == "unauthenticated"

    _join(h)
    dup = _join(h)
    assert dup["type"] == "error"
    assert dup["code"] == "already_in_queue"
    assert dup["retryable"] is False

    forbidden = h.handle({"type": "staff_advance", "token": "t-alice", "salon_id": "s1"})
    assert forbidden["code"] == "forbidden"


def test_request_field_validation():
    h = QueueRequestHandler(*_setup())
    entry_id = _join(h)["entry"]["id"]
    bad_join = h.handle({"type": "join_queue", "token": "t-bob", "salon_id": "s1", "service_ids": "cut"})
    assert bad_join["code"] == "invalid_input"

    bad_lat = h.handle({"type": "check_in", "token": "t-alice", "entry_id": entry_id, "latitude": "north"})
    assert bad_lat["code"] == "invalid_input"

    bad_confirm = h.handle({"type": "staff_confirm", "token": "t-sam", "entry_id": entry_id, "confirmed": "yes"})
    assert bad_confirm["code"] == "invalid_input"

    missing = h.handle({"type": "leave_queue", "token": "t-alice"})
    assert missing["code"] == "invalid_input"


def test_full_visit_over_handler():
    h = QueueRequestHandler(*_setup())
    entry_id = _join(h)["entry"]["id"]

    assert h.handle({"type": "staff_notify", "token": "t-sam", "entry_id": entry_id})["entry"]["status"] == "notified"

    checked = h.handle(
        {
            "type": "check_in",
            "token": "t-alice",
            "entry_id": entry_id,
            "latitude": 40.7129,
            "longitude": -74.0061,
            "accuracy": 10,
        }
    )

    assert checked["type"] == "check_in_result"
    assert checked["status"] == "nearby"
    assert checked["auto_approved"] is True

    assert h.handle({"type": "staff_advance", "token": "t-sam", "salon_id": "s1"})["entry"]["id"] == entry_id
    done = h.handle({"type": "staff_complete", "token": "t-sam", "entry_id": entry_id})
    assert done["entry"]["status"] == "completed"

    review = h.handle({"type": "submit_review", "token": "t-alice", "entry_id": entry_id})
    assert review["type"] == "review_recorded"

    history = h.handle({"type": "my_entries", "token": "t-alice", "include_history": True})
    assert [e["id"] for e in history["entries"]] == [entry_id]
    assert h.handle({"type": "my_entries", "token": "t-alice"})["entries"] == []


def test_pending_check_in_and_staff_decision():
    h = QueueRequestHandler(*_setup())
    entry_id = _join(h)["entry"]["id"]
    h.handle({"type": "staff_notify", "token": "t-sam", "entry_id": entry_id})

    checked = h.handle({"type": "check_in", "token": "t-alice", "entry_id": entry_id})
    assert checked["status"] == "pending_verification"
    assert checked["reason"] == "no_location"
    assert checked["requires_confirmation"] is True

    decided = h.handle({"type": "staff_confirm", "token": "t-sam", "entry_id": entry_id, "confirmed": True})
    assert decided["confirmed"] is True
    assert decided["entry"]["status"] == "nearby"


def test_unexpected_failure_becomes_internal_error():
    h = QueueRequestHandler(*_setup())

    def boom(*_args, **_kwargs):
        raise RuntimeError("bug")

    h.engine.my_entries = boom
    reply = h.handle({"type": "my_entries", "token": "t-alice"})
    assert reply["type"] == "error"
    assert reply["code"] == "internal_error"


def test_snapshot_request():
    h = QueueRequestHandler(*_setup())
    _join(h)
    snap = h.handle({"type": "queue_snapshot", "token": "t-bob", "salon_id": "s1"})
    assert snap["type"] == "queue_snapshot"
    assert snap["seq"] == 2
    assert len(snap["entries"]) == 1


def test_mqtt_service_replies_with_corr_id():
    engine, identities = _setup()
    mqtt = FakeMqtt()
    svc = MqttQueueService(mqtt=mqtt, engine=engine, identities=identities, namespace=NS)
    svc.start()
    assert mqtt.subscribed == [f"{NS}/queue/requests"]

    mqtt.handlers[0](
        f"{NS}/queue/requests",
        {
            "type": "join_queue",
            "token": "t-alice",
            "salon_id": "s1",
            "service_ids": ["cut"],
            "corr_id": "c-1",
            "reply_to": f"{NS}/queue/responses/cli",
        },
    )
    replies = [m for t, m in mqtt.published if t == f"{NS}/queue/responses/cli"]
    assert len(replies) == 1
    assert replies[0]["corr_id"] == "c-1"
    assert replies[0]["type"] == "joined"


def test_mqtt_service_ignores_other_topics_and_missing_reply_to():
    engine, identities = _setup()
    mqtt = FakeMqtt()
    MqttQueueService(mqtt=mqtt, engine=engine, identities=identities, namespace=NS).start()
    mqtt.handlers[0]("elsewhere", {"type": "my_entries", "token": "t-alice", "reply_to": "x"})
    mqtt.handlers[0](f"{NS}/queue/requests", {"type": "my_entries", "token": "t-alice"})
    assert mqtt.published == []


def test_mqtt_service_streams_events_to_salon_and_user_topics():
    engine, identities = _setup()
    mqtt = FakeMqtt()
    MqttQueueService(mqtt=mqtt, engine=engine, identities=identities, namespace=NS).start()
    _join(QueueRequestHandler(engine, identities))
    engine.store.fanout.flush()

    salon_msgs = [m for t, m in mqtt.published if t == f"{NS}/salons/s1/events"]
    user_msgs = [m for t, m in mqtt.published if t == f"{NS}/users/alice/events"]
    assert [m["type"] for m in salon_msgs] == ["queue_join", "queue_position_update"]
    assert [m["seq"] for m in salon_msgs] == [1, 2]
    assert [m["type"] for m in user_msgs] == ["queue_join"]


def test_staff_notify_carries_estimated_minutes():
    engine, identities = _setup()
    h = QueueRequestHandler(engine, identities)
    sub = engine.subscribe(user_id="alice")
    entry_id = _join(h)["entry"]["id"]

    reply = h.handle({"type": "staff_notify", "token": "t-sam", "entry_id": entry_id, "estimated_minutes": 10})
    assert reply["entry"]["notification_minutes"] == 10
    notices = [e for e in sub.drain() if e.type == "queue_notification"]
    assert notices[0].to_message()["entry"]["notification_minutes"] == 10

    bad = h.handle({"type": "staff_notify", "token": "t-sam", "entry_id": entry_id, "estimated_minutes": "soon"})
    assert bad["code"] == "invalid_input"


def test_reputation_request_is_own_or_staff():
    h = QueueRequestHandler(*_setup())
    mine = h.handle({"type": "reputation", "token": "t-alice"})
    assert mine["type"] == "reputation"
    assert mine["user_id"] == "alice"
    assert mine["score"] == 50
    assert mine["trust_level"] == "new"

    assert h.handle({"type": "reputation", "token": "t-alice", "user_id": "bob"})["code"] == "forbidden"
    assert h.handle({"type": "reputation", "token": "t-sam", "user_id": "bob"})["user_id"] == "bob"


def test_check_in_history_request_lists_attempts():
    h = QueueRequestHandler(*_setup())
    entry_id = _join(h)["entry"]["id"]
    h.handle({"type": "staff_notify", "token": "t-sam", "entry_id": entry_id})
    h.handle({"type": "check_in", "token": "t-alice", "entry_id": entry_id})

    reply = h.handle({"type": "check_in_history", "token": "t-alice", "entry_id": entry_id})
    assert reply["type"] == "check_in_history"
    assert [a["reason"] for a in reply["attempts"]] == ["no_location"]
    assert reply["attempts"][0]["auto_approved"] is False

    other = h.handle({"type": "check_in_history", "token": "t-bob", "entry_id": entry_id})
    assert other["code"] == "not_entry_owner"
