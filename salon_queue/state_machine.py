"""Legal status transitions for queue entries.

The table below is the single source of truth for which event may move an
entry from one status to another. `transition()` never mutates its input: it
returns a new entry with the status and the matching timestamps updated, or
raises `InvalidTransition` leaving the caller's state untouched.

Guards that need the whole salon queue (position, free service bay) are
checked by the store before calling in; the per-entry guards (lead
threshold, grace period) live here as plain functions.
"""

from __future__ import annotations

from dataclasses import replace
from enum import Enum

from .errors import InvalidTransition
from .models import QueueEntry, QueueStatus, VerificationReason


class Event(str, Enum):
    NOTIFY = "notify"
    CHECK_IN_APPROVED = "check_in_approved"
    CHECK_IN_REVIEW = "check_in_review"
    STAFF_CONFIRM = "staff_confirm"
    STAFF_REJECT = "staff_reject"
    START_SERVICE = "start_service"
    COMPLETE = "complete"
    ARRIVAL_TIMEOUT = "arrival_timeout"


S = QueueStatus

TRANSITIONS: dict[tuple[QueueStatus, Event], QueueStatus] = {
    (S.WAITING, Event.NOTIFY): S.NOTIFIED,
    (S.NOTIFIED, Event.CHECK_IN_APPROVED): S.NEARBY,
    (S.NOTIFIED, Event.CHECK_IN_REVIEW): S.PENDING_VERIFICATION,
    (S.PENDING_VERIFICATION, Event.STAFF_CONFIRM): S.NEARBY,
    (S.PENDING_VERIFICATION, Event.STAFF_REJECT): S.NOTIFIED,
    (S.NEARBY, Event.START_SERVICE): S.IN_PROGRESS,
    (S.WAITING, Event.START_SERVICE): S.IN_PROGRESS,
    (S.NOTIFIED, Event.START_SERVICE): S.IN_PROGRESS,
    (S.IN_PROGRESS, Event.COMPLETE): S.COMPLETED,
    (S.NOTIFIED, Event.ARRIVAL_TIMEOUT): S.NO_SHOW,
    (S.PENDING_VERIFICATION, Event.ARRIVAL_TIMEOUT): S.NO_SHOW,
}

# Statuses from which a customer may leave the queue.
LEAVABLE_STATUSES = frozenset(
    {S.WAITING, S.NOTIFIED, S.PENDING_VERIFICATION, S.NEARBY}
)


def target_status(entry: QueueEntry, event: Event) -> QueueStatus:
    """Return the status `event` leads to, or raise `InvalidTransition`."""
    if entry.is_removed:
        raise InvalidTransition(entry.status.value, event.value, "entry has left the queue")
    try:
        return TRANSITIONS[(entry.status, event)]
    except KeyError:
        raise InvalidTransition(entry.status.value, event.value) from None


def transition(
    entry: QueueEntry,
    event: Event,
    *,
    now: float,
    reason: VerificationReason | None = None,
    note: str | None = None,
) -> QueueEntry:
    """Apply `event` to `entry` and return the updated copy."""
    new_status = target_status(entry, event)
    changes: dict = {"status": new_status}

    if new_status is S.NOTIFIED and entry.notified_at is None:
        changes["notified_at"] = now
    if new_status is S.PENDING_VERIFICATION:
        changes["verification_reason"] = reason
    else:
        changes["verification_reason"] = None
    if new_status is S.NEARBY:
        changes["verified_at"] = now
        if event is Event.STAFF_CONFIRM:
            changes["verification_method"] = "manual"
    if new_status is S.IN_PROGRESS:
        changes["service_started_at"] = now
        changes["position"] = None
    if new_status is S.COMPLETED:
        changes["completed_at"] = now
        changes["estimated_wait_minutes"] = 0
    if new_status is S.NO_SHOW:
        changes["no_show_at"] = now
        changes["no_show_reason"] = note or "Did not arrive within the grace period"
        changes["position"] = None
        changes["estimated_wait_minutes"] = 0

    return replace(entry, **changes)


def within_notify_lead(entry: QueueEntry, lead_positions: int) -> bool:
    """True when a waiting entry is close enough to the front to be notified."""
    return (
        entry.status is S.WAITING
        and not entry.is_removed
        and entry.position is not None
        and entry.position <= max(1, lead_positions)
    )


def arrival_expired(entry: QueueEntry, *, now: float, grace_seconds: float) -> bool:
    """True when a notified customer has not arrived within the grace period."""
    if entry.is_removed or entry.status not in (S.NOTIFIED, S.PENDING_VERIFICATION):
        return False
    if entry.notified_at is None:
        return False
    return now - entry.notified_at >= grace_seconds
