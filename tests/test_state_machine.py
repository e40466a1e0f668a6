from dataclasses import replace

import pytest

from salon_queue.errors import InvalidTransition
from salon_queue.models import QueueEntry, QueueStatus, ServiceItem, VerificationReason
from salon_queue.state_machine import Event, arrival_expired, transition, within_notify_lead


def _entry(**kw) -> QueueEntry:
    return QueueEntry(
        salon_id="s1",
        user_id="u1",
        services=(ServiceItem("cut", "Cut", 20.0, 30),),
        joined_at=0.0,
        **kw,
    )


def test_happy_path_sets_timestamps():
    e = _entry(position=1)
    e = transition(e, Event.NOTIFY, now=10.0)
    assert e.status is QueueStatus.NOTIFIED
    assert e.notified_at == 10.0

    e = transition(e, Event.CHECK_IN_APPROVED, now=20.0)
    assert e.status is QueueStatus.NEARBY
    assert e.verified_at == 20.0

    e = transition(e, Event.START_SERVICE, now=30.0)
    assert e.status is QueueStatus.IN_PROGRESS
    assert e.service_started_at == 30.0
    assert e.position is None

    e = transition(e, Event.COMPLETE, now=40.0)
    assert e.status is QueueStatus.COMPLETED
    assert e.completed_at == 40.0
    assert e.estimated_wait_minutes == 0


def test_transition_does_not_mutate_input():
    e = _entry()
    notified = transition(e, Event.NOTIFY, now=1.0)
    assert e.status is QueueStatus.WAITING
    assert notified is not e


def test_review_records_reason_and_confirm_clears_it():
    e = transition(_entry(), Event.NOTIFY, now=1.0)
    pending = transition(e, Event.CHECK_IN_REVIEW, now=2.0, reason=VerificationReason.TOO_FAR)
    assert pending.status is QueueStatus.PENDING_VERIFICATION
    assert pending.verification_reason is VerificationReason.TOO_FAR

    nearby = transition(pending, Event.STAFF_CONFIRM, now=3.0)
    assert nearby.verification_reason is None
    assert nearby.verification_method == "manual"


def test_staff_reject_returns_to_notified_keeping_notified_at():
    e = transition(_entry(), Event.NOTIFY, now=1.0)
    pending = transition(e, Event.CHECK_IN_REVIEW, now=2.0, reason=VerificationReason.NO_LOCATION)
    back = transition(pending, Event.STAFF_REJECT, now=3.0)
    assert back.status is QueueStatus.NOTIFIED
    assert back.notified_at == 1.0


@pytest.mark.parametrize(
    "status,event",
    [
        (QueueStatus.WAITING, Event.CHECK_IN_APPROVED),
        (QueueStatus.WAITING, Event.COMPLETE),
        (QueueStatus.NEARBY, Event.NOTIFY),
        (QueueStatus.COMPLETED, Event.START_SERVICE),
        (QueueStatus.NO_SHOW, Event.NOTIFY),
        (QueueStatus.IN_PROGRESS, Event.ARRIVAL_TIMEOUT),
    ],
)
def test_illegal_transitions_raise(status, event):
    with pytest.raises(InvalidTransition):
        transition(_entry(status=status), event, now=0.0)


def test_removed_entry_cannot_transition():
    e = _entry(removed_at=5.0)
    with pytest.raises(InvalidTransition):
        transition(e, Event.NOTIFY, now=6.0)


def test_no_show_clears_position():
    e = transition(_entry(position=1), Event.NOTIFY, now=0.0)
    gone = transition(e, Event.ARRIVAL_TIMEOUT, now=900.0)
    assert gone.status is QueueStatus.NO_SHOW
    assert gone.position is None
    assert gone.no_show_at == 900.0
    assert gone.no_show_reason


def test_within_notify_lead():
    assert within_notify_lead(_entry(position=1), 1)
    assert not within_notify_lead(_entry(position=2), 1)
    assert within_notify_lead(_entry(position=2), 2)
    assert not within_notify_lead(_entry(position=1, status=QueueStatus.NOTIFIED), 1)


def test_arrival_expired_only_after_grace():
    e = transition(_entry(), Event.NOTIFY, now=100.0)
    assert not arrival_expired(e, now=100.0 + 899.0, grace_seconds=900.0)
    assert arrival_expired(e, now=100.0 + 900.0, grace_seconds=900.0)
    assert not arrival_expired(replace(e, removed_at=200.0), now=5000.0, grace_seconds=900.0)
