"""MQTT topic helpers.

We keep topic construction in one place so the service and its clients agree
on naming.

Topic layout under a configurable namespace (default: `salons/v1`):

Request/response:
- `<ns>/queue/requests`
    Customers and staff send operations here (join, check_in, advance, ...).
- `<ns>/queue/responses/<client_id>`
    The service replies on the requester's dedicated topic.

Event streams (fanout):
- `<ns>/salons/<salon_id>/events`
    Every change to one salon's queue, in the order the store produced it.
- `<ns>/users/<user_id>/events`
    Changes to one customer's own entries, across salons.

Run several independent demos on a shared broker by changing `namespace`.
"""

from __future__ import annotations


def queue_requests(namespace: str = "salons/v1") -> str:
    return f"{namespace}/queue/requests"


def queue_responses(client_id: str, namespace: str = "salons/v1") -> str:
    return f"{namespace}/queue/responses/{client_id}"


def salon_events(salon_id: str, namespace: str = "salons/v1") -> str:
    return f"{namespace}/salons/{salon_id}/events"


def user_events(user_id: str, namespace: str = "salons/v1") -> str:
    return f"{namespace}/users/{user_id}/events"
