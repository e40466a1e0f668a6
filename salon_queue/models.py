"""Queue entry data model.

Entries are immutable snapshots: every state change produces a new
`QueueEntry` via `dataclasses.replace`, so the store can compute a whole
batch of changes, persist it, and only then swap it in.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class QueueStatus(str, Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    PENDING_VERIFICATION = "pending_verification"
    NEARBY = "nearby"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    NO_SHOW = "no-show"


# Statuses that hold a position in the active ranking.
RANKED_STATUSES = frozenset(
    {
        QueueStatus.WAITING,
        QueueStatus.NOTIFIED,
        QueueStatus.PENDING_VERIFICATION,
        QueueStatus.NEARBY,
    }
)

TERMINAL_STATUSES = frozenset({QueueStatus.COMPLETED, QueueStatus.NO_SHOW})


class VerificationReason(str, Enum):
    NO_LOCATION = "no_location"
    TOO_FAR = "too_far"
    SUSPICIOUS = "suspicious"


@dataclass(frozen=True)
class ServiceItem:
    id: str
    name: str
    price: float
    duration_minutes: int


@dataclass(frozen=True)
class Location:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class CheckIn:
    """Last location a customer submitted for an entry."""

    latitude: float
    longitude: float
    accuracy_meters: float | None
    distance_meters: float
    captured_at: float


@dataclass(frozen=True)
class CheckInAudit:
    """One check-in attempt as it was decided. Never rewritten."""

    attempted_at: float
    auto_approved: bool
    latitude: float | None = None
    longitude: float | None = None
    accuracy_meters: float | None = None
    distance_meters: float | None = None
    reason: str | None = None
    message: str = ""


@dataclass(frozen=True)
class QueueEntry:
    salon_id: str
    user_id: str
    services: tuple[ServiceItem, ...]
    joined_at: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: QueueStatus = QueueStatus.WAITING
    position: int | None = None
    estimated_wait_minutes: int = 0

    notified_at: float | None = None
    notification_minutes: int | None = None
    check_in: CheckIn | None = None
    check_in_history: tuple[CheckInAudit, ...] = ()
    check_in_attempted_at: float | None = None
    verification_reason: VerificationReason | None = None
    verification_method: str | None = None  # "gps_auto" or "manual"
    verified_at: float | None = None

    service_started_at: float | None = None
    completed_at: float | None = None
    no_show_at: float | None = None
    no_show_reason: str | None = None
    removed_at: float | None = None
    review_submitted_at: float | None = None

    # Bumped by the store on every lifecycle change; check-in decisions
    # computed outside the salon lock compare against it before landing.
    generation: int = 0

    @property
    def total_price(self) -> float:
        return float(sum(s.price for s in self.services))

    @property
    def total_duration_minutes(self) -> int:
        return int(sum(s.duration_minutes for s in self.services))

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_removed(self) -> bool:
        return self.removed_at is not None

    @property
    def is_active(self) -> bool:
        """Non-terminal and not removed via leave."""
        return not self.is_terminal and not self.is_removed

    @property
    def is_ranked(self) -> bool:
        return not self.is_removed and self.status in RANKED_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["verification_reason"] = (
            self.verification_reason.value if self.verification_reason else None
        )
        data["services"] = [asdict(s) for s in self.services]
        data["check_in_history"] = [asdict(a) for a in self.check_in_history]
        data["total_price"] = self.total_price
        data["total_duration_minutes"] = self.total_duration_minutes
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        check_in = data.get("check_in")
        reason = data.get("verification_reason")
        return cls(
            id=str(data["id"]),
            salon_id=str(data["salon_id"]),
            user_id=str(data["user_id"]),
            services=tuple(ServiceItem(**s) for s in data.get("services", [])),
            joined_at=float(data["joined_at"]),
            status=QueueStatus(data.get("status", QueueStatus.WAITING.value)),
            position=data.get("position"),
            estimated_wait_minutes=int(data.get("estimated_wait_minutes", 0) or 0),
            notified_at=data.get("notified_at"),
            notification_minutes=data.get("notification_minutes"),
            check_in=CheckIn(**check_in) if check_in else None,
            check_in_history=tuple(CheckInAudit(**a) for a in data.get("check_in_history", [])),
            check_in_attempted_at=data.get("check_in_attempted_at"),
            verification_reason=VerificationReason(reason) if reason else None,
            verification_method=data.get("verification_method"),
            verified_at=data.get("verified_at"),
            service_started_at=data.get("service_started_at"),
            completed_at=data.get("completed_at"),
            no_show_at=data.get("no_show_at"),
            no_show_reason=data.get("no_show_reason"),
            removed_at=data.get("removed_at"),
            review_submitted_at=data.get("review_submitted_at"),
            generation=int(data.get("generation", 0) or 0),
        )
