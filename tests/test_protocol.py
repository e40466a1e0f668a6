from salon_queue.mqtt_topics import queue_requests, queue_responses, salon_events, user_events


def test_topic_helpers():
    ns = "demo/v1"
    assert queue_requests(ns) == "demo/v1/queue/requests"
    assert queue_responses("c1", ns) == "demo/v1/queue/responses/c1"
    assert salon_events("s1", ns) == "demo/v1/salons/s1/events"
    assert user_events("u1", ns) == "demo/v1/users/u1/events"


def test_default_namespace():
    assert queue_requests() == "salons/v1/queue/requests"
