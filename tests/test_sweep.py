from salon_queue.fanout import EventType
from salon_queue.models import QueueStatus, ServiceItem, VerificationReason
from salon_queue.reputation import INITIAL_SCORE
from salon_queue.store import QueueStore
from salon_queue.verification import CheckInAttempt, Decision

CUT = ServiceItem("cut", "Haircut", 30.0, 30)
GRACE = 15 * 60.0


def test_sweep_notifies_front_of_queue():
    s = QueueStore(clock=lambda: 0.0)
    a = s.join("s1", "a", [CUT])
    b = s.join("s1", "b", [CUT])
    changed = s.sweep(grace_seconds=GRACE, notify_lead_positions=1, now=10.0)
    assert [e.id for e in changed] == [a.id]
    assert s.get(a.id).status is QueueStatus.NOTIFIED
    assert s.get(a.id).notified_at == 10.0
    assert s.get(b.id).status is QueueStatus.WAITING


def test_sweep_lead_covers_several_positions():
    s = QueueStore(clock=lambda: 0.0)
    ids = [s.join("s1", f"u{i}", [CUT]).id for i in range(4)]
    s.sweep(grace_seconds=GRACE, notify_lead_positions=2, now=1.0)
    statuses = [s.get(i).status for i in ids]
    assert statuses == [QueueStatus.NOTIFIED, QueueStatus.NOTIFIED, QueueStatus.WAITING, QueueStatus.WAITING]


def test_no_show_happens_exactly_once():
    s = QueueStore(clock=lambda: 0.0)
    a = s.join("s1", "a", [CUT])
    b = s.join("s1", "b", [CUT])
    s.notify(a.id, now=0.0)
    sub = s.fanout.subscribe(salon_id="s1")

    # Not yet expired.
    s.sweep(grace_seconds=GRACE, notify_lead_positions=1, now=GRACE - 1)
    assert s.get(a.id).status is QueueStatus.NOTIFIED

    s.sweep(grace_seconds=GRACE, notify_lead_positions=1, now=GRACE)
    gone = s.get(a.id)
    assert gone.status is QueueStatus.NO_SHOW
    assert gone.position is None
    assert s.get(b.id).position == 1
    assert s.reputation.get("a").score == INITIAL_SCORE - 5

    # b is now first in line and gets notified by the same sweep's lead pass.
    assert s.get(b.id).status is QueueStatus.NOTIFIED

    again = s.sweep(grace_seconds=GRACE, notify_lead_positions=1, now=GRACE)
    assert again == []
    no_shows = [e for e in sub.drain() if e.type == EventType.NO_SHOW]
    assert len(no_shows) == 1
    assert s.reputation.get("a").score == INITIAL_SCORE - 5


def test_pending_verification_also_expires():
    s = QueueStore(clock=lambda: 0.0)
    a = s.join("s1", "a", [CUT])
    s.notify(a.id, now=0.0)
    s.commit_check_in(
        a.id,
        s.get(a.id).generation,
        CheckInAttempt(),
        Decision.review(VerificationReason.NO_LOCATION, None, "manual"),
        now=60.0,
    )
    assert s.get(a.id).status is QueueStatus.PENDING_VERIFICATION
    s.sweep(grace_seconds=GRACE, notify_lead_positions=1, now=GRACE)
    assert s.get(a.id).status is QueueStatus.NO_SHOW


def test_sweep_skips_departed_and_served_entries():
    s = QueueStore(clock=lambda: 0.0)
    a = s.join("s1", "a", [CUT])
    b = s.join("s1", "b", [CUT])
    s.notify(a.id, now=0.0)
    s.notify(b.id, now=0.0)
    s.leave(a.id, now=1.0)
    s.advance_to_service("s1", now=2.0)
    assert s.sweep(grace_seconds=GRACE, notify_lead_positions=1, now=10 * GRACE) == []
    assert s.get(b.id).status is QueueStatus.IN_PROGRESS


def test_auto_notification_carries_current_estimate():
    s = QueueStore(clock=lambda: 0.0)
    s.join("s1", "a", [CUT])
    b = s.join("s1", "b", [CUT])
    s.sweep(grace_seconds=GRACE, notify_lead_positions=2, now=1.0)
    assert s.get(b.id).notification_minutes == 30
