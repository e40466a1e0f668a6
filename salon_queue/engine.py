"""Operations exposed to clients and staff.

`QueueEngine` is the seam between callers and the store. It resolves
collaborators (salon directory, reputation) *before* taking any salon lock,
checks who is allowed to do what, and runs the check-in flow as
read-snapshot -> verify -> compare-and-set so that the verification never
holds a lock.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .config import Settings
from .directory import SalonDirectory, Session
from .errors import Forbidden, NotEntryOwner, UserBanned, ValidationError
from .fanout import EventFanout, Subscription
from .geo import valid_coordinates
from .models import CheckInAudit, QueueEntry, QueueStatus, VerificationReason
from .repository import EntryRepository, JsonLinesEntryRepository, MemoryEntryRepository
from .reputation import (
    JsonLinesReputationRepository,
    MemoryReputationRepository,
    Reputation,
    ReputationBook,
    ReputationRepository,
    TrustLevel,
)
from .store import QueueStore
from .verification import CheckInAttempt, VerificationPolicy, evaluate


@dataclass(frozen=True)
class CheckInResult:
    status: QueueStatus
    auto_approved: bool
    message: str
    entry: QueueEntry
    reason: VerificationReason | None = None
    distance_meters: float | None = None

    def to_message(self) -> dict[str, Any]:
        return {
            "type": "check_in_result",
            "status": self.status.value,
            "auto_approved": self.auto_approved,
            "requires_confirmation": self.status is QueueStatus.PENDING_VERIFICATION,
            "reason": self.reason.value if self.reason else None,
            "distance_meters": round(self.distance_meters) if self.distance_meters is not None else None,
            "message": self.message,
            "entry": self.entry.to_dict(),
        }


class QueueEngine:
    def __init__(
        self,
        *,
        store: QueueStore,
        directory: SalonDirectory,
        policy: VerificationPolicy | None = None,
        grace_seconds: float = 15 * 60.0,
        notify_lead_positions: int = 1,
    ) -> None:
        self.store = store
        self.directory = directory
        self.policy = policy or VerificationPolicy()
        self.grace_seconds = grace_seconds
        self.notify_lead_positions = notify_lead_positions

    @classmethod
    def from_settings(cls, settings: Settings, directory: SalonDirectory) -> QueueEngine:
        repository: EntryRepository
        ledger: ReputationRepository
        if settings.store_provider.lower() == "jsonl":
            repository = JsonLinesEntryRepository(settings.data_file)
            ledger = JsonLinesReputationRepository(settings.reputation_file)
        else:
            repository = MemoryEntryRepository()
            ledger = MemoryReputationRepository()
        reputation = ReputationBook(
            ledger,
            persist_retry_attempts=settings.persist_retry_attempts,
            persist_retry_delay=settings.persist_retry_delay_seconds,
        )
        reputation.load()
        fanout = EventFanout(
            replay_buffer_size=settings.replay_buffer_size,
            inbox_size=settings.subscriber_inbox_size,
        )
        store = QueueStore(
            repository=repository,
            fanout=fanout,
            reputation=reputation,
            persist_retry_attempts=settings.persist_retry_attempts,
            persist_retry_delay=settings.persist_retry_delay_seconds,
        )
        store.load()
        return cls(
            store=store,
            directory=directory,
            policy=settings.verification_policy(),
            grace_seconds=settings.grace_period_seconds,
            notify_lead_positions=settings.notify_lead_positions,
        )

    # -------------------- access checks --------------------

    def _require_owner_or_staff(self, session: Session, entry: QueueEntry) -> None:
        if entry.user_id != session.user_id and not session.can_manage(entry.salon_id):
            raise NotEntryOwner(entry_id=entry.id)

    def _require_staff(self, session: Session, salon_id: str) -> None:
        if not session.can_manage(salon_id):
            raise Forbidden(salon_id=salon_id)

    # -------------------- customer operations --------------------

    def join_queue(self, session: Session, salon_id: str, service_ids: list[str]) -> QueueEntry:
        if not service_ids:
            raise ValidationError("select at least one service")
        if len(set(service_ids)) != len(service_ids):
            raise ValidationError("each service can be selected only once")
        salon = self.directory.get(salon_id)
        services = salon.resolve_services(service_ids)
        if self.store.reputation.trust_level(session.user_id) is TrustLevel.BANNED:
            raise UserBanned(user_id=session.user_id)
        return self.store.join(salon_id, session.user_id, services)

    def leave_queue(self, session: Session, entry_id: str) -> None:
        entry = self.store.get(entry_id)
        self._require_owner_or_staff(session, entry)
        self.store.leave(entry_id)

    def submit_check_in(
        self, session: Session, entry_id: str, location: CheckInAttempt | None = None
    ) -> CheckInResult:
        attempt = location or CheckInAttempt()
        lat, lon = attempt.latitude, attempt.longitude
        if (lat is None) != (lon is None):
            raise ValidationError("latitude and longitude must be sent together")
        if lat is not None and lon is not None and not valid_coordinates(lat, lon):
            raise ValidationError("invalid location coordinates")
        if attempt.accuracy_meters is not None and attempt.accuracy_meters < 0:
            raise ValidationError("accuracy must be >= 0")

        self._require_owner_or_staff(session, self.store.get(entry_id))
        entry = self.store.begin_check_in(entry_id)

        salon = self.directory.get(entry.salon_id)
        flagged = self.store.reputation.trust_level(entry.user_id) is TrustLevel.SUSPICIOUS
        now = self.store.clock()
        decision = evaluate(
            attempt,
            salon.location,
            policy=self.policy,
            now=now,
            previous=entry.check_in,
            flagged_user=flagged,
        )
        committed = self.store.commit_check_in(entry_id, entry.generation, attempt, decision, now=now)
        return CheckInResult(
            status=committed.status,
            auto_approved=decision.auto_approved,
            message=decision.message,
            entry=committed,
            reason=decision.reason,
            distance_meters=decision.distance_meters,
        )

    def mark_review_submitted(self, session: Session, entry_id: str) -> QueueEntry:
        entry = self.store.get(entry_id)
        if entry.user_id != session.user_id:
            raise NotEntryOwner(entry_id=entry_id)
        return self.store.mark_review_submitted(entry_id)

    def my_entries(self, session: Session, *, active_only: bool = True) -> list[QueueEntry]:
        return self.store.entries_for_user(session.user_id, active_only=active_only)

    def reputation(self, session: Session, user_id: str | None = None) -> Reputation:
        """A user's score and counters. Customers may only read their own."""
        user_id = user_id or session.user_id
        if user_id != session.user_id and not session.is_staff:
            raise Forbidden("only staff can read another user's reputation")
        return self.store.reputation.get(user_id)

    def check_in_history(self, session: Session, entry_id: str) -> tuple[CheckInAudit, ...]:
        entry = self.store.get(entry_id)
        self._require_owner_or_staff(session, entry)
        return entry.check_in_history

    # -------------------- staff operations --------------------

    def staff_advance(self, session: Session, salon_id: str) -> QueueEntry:
        self._require_staff(session, salon_id)
        return self.store.advance_to_service(salon_id)

    def staff_complete_service(self, session: Session, entry_id: str) -> QueueEntry:
        entry = self.store.get(entry_id)
        self._require_staff(session, entry.salon_id)
        return self.store.complete_service(entry_id)

    def staff_confirm_arrival(self, session: Session, entry_id: str, confirmed: bool) -> QueueEntry:
        entry = self.store.get(entry_id)
        self._require_staff(session, entry.salon_id)
        return self.store.confirm_arrival(entry_id, confirmed)

    def staff_notify(self, session: Session, entry_id: str, estimated_minutes: int | None = None) -> QueueEntry:
        if estimated_minutes is not None and (
            isinstance(estimated_minutes, bool) or not isinstance(estimated_minutes, int) or estimated_minutes < 0
        ):
            raise ValidationError("estimated_minutes must be a whole number >= 0")
        entry = self.store.get(entry_id)
        self._require_staff(session, entry.salon_id)
        return self.store.notify(entry_id, estimated_minutes=estimated_minutes)

    # -------------------- timers --------------------

    def sweep(self, *, now: float | None = None) -> list[QueueEntry]:
        return self.store.sweep(
            grace_seconds=self.grace_seconds,
            notify_lead_positions=self.notify_lead_positions,
            now=now,
        )

    # -------------------- observers --------------------

    def queue_snapshot(self, salon_id: str) -> dict[str, Any]:
        return self.store.snapshot(salon_id)

    def subscribe(
        self,
        *,
        salon_id: str | None = None,
        user_id: str | None = None,
        since_seq: int | None = None,
    ) -> Subscription:
        return self.store.fanout.subscribe(salon_id=salon_id, user_id=user_id, since_seq=since_seq)

    def resync(self, salon_id: str) -> dict[str, Any]:
        """Full current state for a client that reconnected after a gap."""
        return self.store.snapshot(salon_id)
