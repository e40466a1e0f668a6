from __future__ import annotations

# The Queue Store is the *authoritative owner* of every salon's live queue.
#
# Each salon has its own lock. Every mutation runs entirely inside that lock:
#   1. compute the new entries (state machine, no mutation yet)
#   2. renumber the active ranking and recompute wait times
#   3. persist the changed entries (write-ahead, retried with backoff)
#   4. swap them into memory
#   5. publish the events, a personal update for every customer who moved,
#      and a fresh position snapshot
# A failure in steps 1-3 leaves the salon exactly as it was.
#
# Different salons never share a lock, so they proceed in parallel.

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from typing import Any

from .errors import (
    DuplicateActiveEntry,
    EmptyQueue,
    InvalidTransition,
    NotFound,
    ServiceBayOccupied,
)
from .fanout import EventFanout, EventType
from .models import CheckIn, CheckInAudit, QueueEntry, QueueStatus, ServiceItem
from .repository import EntryRepository, MemoryEntryRepository, retry_with_backoff
from .reputation import ReputationAction, ReputationBook
from .state_machine import (
    LEAVABLE_STATUSES,
    Event,
    arrival_expired,
    transition,
    within_notify_lead,
)
from .verification import CheckInAttempt, Decision
from .wait_time import compute_wait_minutes

logger = logging.getLogger(__name__)


@dataclass
class SalonQueue:
    """In-memory state for one salon.

    `entries` holds every entry ever created, keyed by id. `active_ids` and
    `active_by_user` index the non-terminal ones, so the ranking and the
    duplicate check never scan history.
    """

    salon_id: str
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[str, QueueEntry] = field(default_factory=dict)
    active_ids: set[str] = field(default_factory=set)
    active_by_user: dict[str, str] = field(default_factory=dict)

    def put(self, entry: QueueEntry) -> None:
        self.entries[entry.id] = entry
        if entry.is_active:
            self.active_ids.add(entry.id)
            self.active_by_user[entry.user_id] = entry.id
        else:
            self.active_ids.discard(entry.id)
            if self.active_by_user.get(entry.user_id) == entry.id:
                del self.active_by_user[entry.user_id]

    def active(self) -> list[QueueEntry]:
        return [self.entries[i] for i in self.active_ids]

    def ranked(self, pool: Iterable[QueueEntry] | None = None) -> list[QueueEntry]:
        candidates = self.active() if pool is None else pool
        ranked = [e for e in candidates if e.is_ranked]
        ranked.sort(key=lambda e: (e.position if e.position is not None else float("inf"), e.joined_at))
        return ranked

    def in_progress(self, pool: Iterable[QueueEntry] | None = None) -> QueueEntry | None:
        candidates = self.active() if pool is None else pool
        for e in candidates:
            if e.status is QueueStatus.IN_PROGRESS:
                return e
        return None


def queue_view(entry: QueueEntry) -> dict[str, Any]:
    """Compact per-entry row used in position update broadcasts."""
    return {
        "id": entry.id,
        "user_id": entry.user_id,
        "position": entry.position,
        "status": entry.status.value,
        "estimated_wait_minutes": entry.estimated_wait_minutes,
    }


class QueueStore:
    """Per-salon ordered queues (testable without MQTT)."""

    def __init__(
        self,
        *,
        repository: EntryRepository | None = None,
        fanout: EventFanout | None = None,
        reputation: ReputationBook | None = None,
        clock: Callable[[], float] = time.time,
        persist_retry_attempts: int = 3,
        persist_retry_delay: float = 0.05,
    ) -> None:
        self.repository = repository or MemoryEntryRepository()
        self.fanout = fanout or EventFanout()
        self.reputation = reputation or ReputationBook()
        self.clock = clock
        self._persist_retry_attempts = persist_retry_attempts
        self._persist_retry_delay = persist_retry_delay

        self._registry_lock = threading.Lock()
        self._salons: dict[str, SalonQueue] = {}
        self._entry_salon: dict[str, str] = {}
        self._user_entries: dict[str, set[str]] = {}

    # -------------------- registry --------------------

    def _salon(self, salon_id: str) -> SalonQueue:
        with self._registry_lock:
            sq = self._salons.get(salon_id)
            if sq is None:
                sq = self._salons[salon_id] = SalonQueue(salon_id=salon_id)
            return sq

    def _salon_of(self, entry_id: str) -> SalonQueue:
        with self._registry_lock:
            salon_id = self._entry_salon.get(entry_id)
            if salon_id is None:
                raise NotFound(f"entry {entry_id} not found", entry_id=entry_id)
            return self._salons[salon_id]

    def salon_ids(self) -> list[str]:
        with self._registry_lock:
            return list(self._salons)

    def load(self) -> int:
        """Rebuild in-memory queues from the repository. Returns the entry count."""
        entries = self.repository.load_all()
        for entry in entries:
            sq = self._salon(entry.salon_id)
            with sq.lock:
                sq.put(entry)
            with self._registry_lock:
                self._entry_salon[entry.id] = entry.salon_id
                self._user_entries.setdefault(entry.user_id, set()).add(entry.id)
        logger.info("Loaded %s queue entries from repository", len(entries))
        return len(entries)

    # -------------------- commit pipeline --------------------

    def _commit(
        self,
        sq: SalonQueue,
        changed: Iterable[QueueEntry],
        events: list[tuple[str, str]],
        *,
        now: float,
    ) -> dict[str, QueueEntry]:
        """Renumber, persist, swap in and publish. Caller holds `sq.lock`."""
        # Only active entries can be renumbered; history is never copied.
        working = {entry_id: sq.entries[entry_id] for entry_id in sq.active_ids}
        touched: set[str] = set()
        for e in changed:
            working[e.id] = e
            touched.add(e.id)

        ranked = sq.ranked(working.values())
        waits = compute_wait_minutes(ranked, in_progress=sq.in_progress(working.values()), now=now)
        for position, e in enumerate(ranked, start=1):
            if e.position != position or e.estimated_wait_minutes != waits[e.id]:
                working[e.id] = replace(e, position=position, estimated_wait_minutes=waits[e.id])

        # Only lifecycle changes bump the generation; a shifted position or a
        # new estimate must not invalidate a check-in being verified.
        batch: dict[str, QueueEntry] = {}
        for entry_id, e in working.items():
            old = sq.entries.get(entry_id)
            if old is e:
                continue
            if entry_id in touched:
                e = replace(e, generation=(old.generation if old else 0) + 1)
            batch[entry_id] = e

        if batch:
            retry_with_backoff(
                lambda: self.repository.save_many(batch.values()),
                attempts=self._persist_retry_attempts,
                base_delay=self._persist_retry_delay,
            )

        previous = {entry_id: sq.entries.get(entry_id) for entry_id in batch}
        for e in batch.values():
            sq.put(e)
        with self._registry_lock:
            for e in batch.values():
                self._entry_salon[e.id] = sq.salon_id
                self._user_entries.setdefault(e.user_id, set()).add(e.id)

        for event_type, entry_id in events:
            entry = sq.entries[entry_id]
            self.fanout.publish(event_type, sq.salon_id, user_id=entry.user_id, entry=entry.to_dict())

        # Customers whose rank or estimate moved hear about it on their own stream.
        announced = {entry_id for _, entry_id in events}
        for entry_id, e in batch.items():
            old = previous[entry_id]
            if entry_id in announced or old is None or not e.is_ranked:
                continue
            if old.position != e.position or old.estimated_wait_minutes != e.estimated_wait_minutes:
                self.fanout.publish(
                    EventType.QUEUE_POSITION_UPDATE, sq.salon_id, user_id=e.user_id, entry=e.to_dict()
                )
        self.fanout.publish(
            EventType.QUEUE_POSITION_UPDATE,
            sq.salon_id,
            queue=[queue_view(e) for e in sq.ranked()],
        )
        return batch

    def _active_entry(self, sq: SalonQueue, entry_id: str) -> QueueEntry:
        entry = sq.entries.get(entry_id)
        if entry is None or not entry.is_active:
            raise NotFound(f"entry {entry_id} is not active", entry_id=entry_id)
        return entry

    def _now(self, now: float | None) -> float:
        return self.clock() if now is None else now

    # -------------------- queue operations --------------------

    def join(
        self,
        salon_id: str,
        user_id: str,
        services: Iterable[ServiceItem],
        *,
        now: float | None = None,
    ) -> QueueEntry:
        """Append a new waiting entry at the back of the salon's ranking."""
        now = self._now(now)
        sq = self._salon(salon_id)
        with sq.lock:
            held = sq.active_by_user.get(user_id)
            if held is not None:
                raise DuplicateActiveEntry(
                    f"user {user_id} already holds entry {held} at salon {salon_id}",
                    entry_id=held,
                )
            ranked = sq.ranked()
            max_position = ranked[-1].position if ranked and ranked[-1].position else 0
            entry = QueueEntry(
                salon_id=salon_id,
                user_id=user_id,
                services=tuple(services),
                joined_at=now,
                position=max_position + 1,
            )
            self._commit(sq, [entry], [(EventType.QUEUE_JOIN, entry.id)], now=now)
            joined = sq.entries[entry.id]

        logger.info(
            "Joined queue at position %s",
            joined.position,
            extra={"salon_id": salon_id, "entry_id": joined.id, "user_id": user_id},
        )
        return joined

    def leave(self, entry_id: str, *, now: float | None = None) -> QueueEntry:
        """Remove an entry from the active ranking and close the gap behind it."""
        now = self._now(now)
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._active_entry(sq, entry_id)
            if entry.status not in LEAVABLE_STATUSES:
                raise InvalidTransition(entry.status.value, "leave")
            removed = replace(
                entry,
                removed_at=now,
                position=None,
                estimated_wait_minutes=0,
                verification_reason=None,
            )
            self._commit(sq, [removed], [(EventType.QUEUE_LEAVE, entry_id)], now=now)
            left = sq.entries[entry_id]

        logger.info("Left queue", extra={"salon_id": sq.salon_id, "entry_id": entry_id})
        return left

    def advance_to_service(self, salon_id: str, *, now: float | None = None) -> QueueEntry:
        """Move the next customer into the service bay.

        Policy: a verified arrival (`nearby`) is served first, earliest rank
        wins; otherwise the entry at position 1 if it is waiting or notified.
        """
        now = self._now(now)
        sq = self._salon(salon_id)
        with sq.lock:
            current = sq.in_progress()
            if current is not None:
                raise ServiceBayOccupied(
                    f"entry {current.id} is already in progress", entry_id=current.id
                )
            ranked = sq.ranked()
            nearby = [e for e in ranked if e.status is QueueStatus.NEARBY]
            if nearby:
                chosen = nearby[0]
            elif ranked and ranked[0].status in (QueueStatus.WAITING, QueueStatus.NOTIFIED):
                chosen = ranked[0]
            else:
                raise EmptyQueue(f"no customer at salon {salon_id} is ready for service")

            started = transition(chosen, Event.START_SERVICE, now=now)
            self._commit(sq, [started], [(EventType.SERVICE_STARTING, chosen.id)], now=now)
            started = sq.entries[chosen.id]

        logger.info(
            "Service started", extra={"salon_id": salon_id, "entry_id": started.id, "status": started.status.value}
        )
        return started

    def complete_service(self, entry_id: str, *, now: float | None = None) -> QueueEntry:
        now = self._now(now)
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._existing(sq, entry_id)
            done = transition(entry, Event.COMPLETE, now=now)
            self._commit(sq, [done], [(EventType.SERVICE_COMPLETED, entry_id)], now=now)
            done = sq.entries[entry_id]
        self.reputation.record(done.user_id, ReputationAction.COMPLETED_SERVICE)
        logger.info("Service completed", extra={"salon_id": sq.salon_id, "entry_id": entry_id})
        return done

    def notify(
        self,
        entry_id: str,
        *,
        estimated_minutes: int | None = None,
        now: float | None = None,
    ) -> QueueEntry:
        """Tell a waiting customer to head to the salon (staff action).

        `estimated_minutes` is the heads-up staff give the customer; it
        defaults to the entry's current wait estimate.
        """
        now = self._now(now)
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._existing(sq, entry_id)
            notified = transition(entry, Event.NOTIFY, now=now)
            minutes = entry.estimated_wait_minutes if estimated_minutes is None else estimated_minutes
            notified = replace(notified, notification_minutes=minutes)
            self._commit(sq, [notified], [(EventType.QUEUE_NOTIFICATION, entry_id)], now=now)
            notified = sq.entries[entry_id]
        logger.info("Customer notified", extra={"salon_id": sq.salon_id, "entry_id": entry_id})
        return notified

    def confirm_arrival(self, entry_id: str, confirmed: bool, *, now: float | None = None) -> QueueEntry:
        """Staff decision on a check-in that needed manual review."""
        now = self._now(now)
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._existing(sq, entry_id)
            event = Event.STAFF_CONFIRM if confirmed else Event.STAFF_REJECT
            decided = transition(entry, event, now=now)
            event_type = EventType.ARRIVAL_CONFIRMED if confirmed else EventType.ARRIVAL_REJECTED
            self._commit(sq, [decided], [(event_type, entry_id)], now=now)
            decided = sq.entries[entry_id]

        action = ReputationAction.SUCCESSFUL_CHECKIN if confirmed else ReputationAction.FALSE_CHECKIN
        self.reputation.record(decided.user_id, action)
        logger.info(
            "Arrival %s by staff",
            "confirmed" if confirmed else "rejected",
            extra={"salon_id": sq.salon_id, "entry_id": entry_id},
        )
        return decided

    def begin_check_in(self, entry_id: str) -> QueueEntry:
        """Snapshot an entry for verification outside the salon lock."""
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._existing(sq, entry_id)
            if entry.is_removed or entry.status is not QueueStatus.NOTIFIED:
                raise InvalidTransition(entry.status.value, "check_in", "check-in not available at this time")
            return entry

    def commit_check_in(
        self,
        entry_id: str,
        expected_generation: int,
        attempt: CheckInAttempt,
        decision: Decision,
        *,
        now: float | None = None,
    ) -> QueueEntry:
        """Land a verification decision if the entry has not changed meanwhile."""
        now = self._now(now)
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._existing(sq, entry_id)
            if entry.generation != expected_generation or not entry.is_active:
                logger.info(
                    "Discarding stale check-in decision",
                    extra={"salon_id": sq.salon_id, "entry_id": entry_id, "status": entry.status.value},
                )
                raise InvalidTransition(
                    entry.status.value, "check_in", "entry changed while the check-in was being verified"
                )

            event = Event.CHECK_IN_APPROVED if decision.auto_approved else Event.CHECK_IN_REVIEW
            checked = transition(entry, event, now=now, reason=decision.reason)
            check_in = entry.check_in
            if attempt.latitude is not None and attempt.longitude is not None:
                check_in = CheckIn(
                    latitude=attempt.latitude,
                    longitude=attempt.longitude,
                    accuracy_meters=attempt.accuracy_meters,
                    distance_meters=decision.distance_meters or 0.0,
                    captured_at=now,
                )
            audit = CheckInAudit(
                attempted_at=now,
                auto_approved=decision.auto_approved,
                latitude=attempt.latitude,
                longitude=attempt.longitude,
                accuracy_meters=attempt.accuracy_meters,
                distance_meters=decision.distance_meters,
                reason=decision.reason.value if decision.reason else None,
                message=decision.message,
            )
            checked = replace(
                checked,
                check_in=check_in,
                check_in_attempted_at=now,
                verification_method="gps_auto" if check_in is not None and decision.auto_approved else "manual",
                check_in_history=entry.check_in_history + (audit,),
            )
            self._commit(sq, [checked], [(EventType.CHECK_IN, entry_id)], now=now)
            checked = sq.entries[entry_id]

        if decision.auto_approved:
            self.reputation.record(checked.user_id, ReputationAction.SUCCESSFUL_CHECKIN)
        logger.info(
            "Check-in processed",
            extra={
                "salon_id": sq.salon_id,
                "entry_id": entry_id,
                "status": checked.status.value,
                "reason": decision.reason.value if decision.reason else None,
            },
        )
        return checked

    def mark_review_submitted(self, entry_id: str, *, now: float | None = None) -> QueueEntry:
        now = self._now(now)
        sq = self._salon_of(entry_id)
        with sq.lock:
            entry = self._existing(sq, entry_id)
            if entry.status is not QueueStatus.COMPLETED or entry.review_submitted_at is not None:
                raise InvalidTransition(entry.status.value, "submit_review")
            reviewed = replace(entry, review_submitted_at=now)
            self._commit(sq, [reviewed], [(EventType.REVIEW_SUBMITTED, entry_id)], now=now)
            return sq.entries[entry_id]

    # -------------------- timers --------------------

    def sweep(
        self,
        *,
        grace_seconds: float,
        notify_lead_positions: int,
        now: float | None = None,
    ) -> list[QueueEntry]:
        """Expire late arrivals and notify customers near the front.

        Safe to run repeatedly: terminal and already-notified entries are
        skipped, so a second sweep at the same instant changes nothing.
        """
        now = self._now(now)
        changed: list[QueueEntry] = []
        for salon_id in self.salon_ids():
            sq = self._salon(salon_id)
            with sq.lock:
                expired = [
                    transition(e, Event.ARRIVAL_TIMEOUT, now=now)
                    for e in sorted(sq.active(), key=lambda e: e.joined_at)
                    if arrival_expired(e, now=now, grace_seconds=grace_seconds)
                ]
                if expired:
                    self._commit(sq, expired, [(EventType.NO_SHOW, e.id) for e in expired], now=now)
                    for e in expired:
                        changed.append(sq.entries[e.id])
                        self.reputation.record(e.user_id, ReputationAction.NO_SHOW)
                        logger.info("Marked no-show", extra={"salon_id": salon_id, "entry_id": e.id})

                due = [
                    replace(transition(e, Event.NOTIFY, now=now), notification_minutes=e.estimated_wait_minutes)
                    for e in sq.ranked()
                    if within_notify_lead(e, notify_lead_positions)
                ]
                if due:
                    self._commit(sq, due, [(EventType.QUEUE_NOTIFICATION, e.id) for e in due], now=now)
                    for e in due:
                        changed.append(sq.entries[e.id])
                        logger.info("Auto-notified", extra={"salon_id": salon_id, "entry_id": e.id})
        return changed

    # -------------------- reads --------------------

    def _existing(self, sq: SalonQueue, entry_id: str) -> QueueEntry:
        entry = sq.entries.get(entry_id)
        if entry is None:
            raise NotFound(f"entry {entry_id} not found", entry_id=entry_id)
        return entry

    def get(self, entry_id: str) -> QueueEntry:
        sq = self._salon_of(entry_id)
        with sq.lock:
            return self._existing(sq, entry_id)

    def snapshot(self, salon_id: str) -> dict[str, Any]:
        """Consistent view of a salon's live queue, with the fanout sequence it matches."""
        sq = self._salon(salon_id)
        with sq.lock:
            current = sq.in_progress()
            return {
                "type": "queue_snapshot",
                "salon_id": salon_id,
                "seq": self.fanout.last_seq(salon_id),
                "in_progress": current.to_dict() if current else None,
                "entries": [e.to_dict() for e in sq.ranked()],
            }

    def ranked(self, salon_id: str) -> list[QueueEntry]:
        sq = self._salon(salon_id)
        with sq.lock:
            return sq.ranked()

    def history(self, salon_id: str) -> list[QueueEntry]:
        sq = self._salon(salon_id)
        with sq.lock:
            return sorted(sq.entries.values(), key=lambda e: e.joined_at)

    def entries_for_user(self, user_id: str, *, active_only: bool = True) -> list[QueueEntry]:
        with self._registry_lock:
            owned = [(self._salons[self._entry_salon[i]], i) for i in self._user_entries.get(user_id, ())]
        found: list[QueueEntry] = []
        for sq, entry_id in owned:
            with sq.lock:
                e = sq.entries[entry_id]
            if e.is_active or not active_only:
                found.append(e)
        return sorted(found, key=lambda e: e.joined_at)
