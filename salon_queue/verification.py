"""Arrival verification policy.

Classifies a check-in attempt as auto-approved or needing staff review. The
policy is conservative: missing or low-confidence data always goes to a
human, and only a clean, close, plausible fix is trusted automatically.

Rules, evaluated in order:

1. no coordinates                               -> review (no_location)
2. reported accuracy worse than the usable bound -> review (no_location)
3. farther than the auto-approve radius         -> review (too_far)
4. implausible movement since the previous fix,
   or the user is flagged by reputation         -> review (suspicious)
5. otherwise                                    -> auto-approve

The distance is computed and reported whenever coordinates are present, so
staff can see it during manual review.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .geo import distance_meters
from .models import CheckIn, Location, VerificationReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationPolicy:
    auto_approve_radius_meters: float = 150.0
    max_accuracy_meters: float = 100.0
    max_speed_kmh: float = 150.0


@dataclass(frozen=True)
class CheckInAttempt:
    latitude: float | None = None
    longitude: float | None = None
    accuracy_meters: float | None = None


@dataclass(frozen=True)
class Decision:
    auto_approved: bool
    reason: VerificationReason | None = None
    distance_meters: float | None = None
    message: str = ""

    @classmethod
    def approve(cls, distance: float) -> Decision:
        return cls(True, None, distance, "Arrival verified automatically")

    @classmethod
    def review(cls, reason: VerificationReason, distance: float | None, message: str) -> Decision:
        return cls(False, reason, distance, message)


def implied_speed_kmh(
    previous: CheckIn,
    latitude: float,
    longitude: float,
    accuracy_meters: float | None,
    *,
    now: float,
) -> float:
    """Speed needed to travel from the previous fix to this one.

    Movement within the combined accuracy of both fixes is treated as GPS
    jitter and yields 0. Movement beyond it with no elapsed time yields
    infinity (a discontinuous jump).
    """
    moved = distance_meters(previous.latitude, previous.longitude, latitude, longitude)
    moved -= (previous.accuracy_meters or 0.0) + (accuracy_meters or 0.0)
    if moved <= 0:
        return 0.0
    elapsed = now - previous.captured_at
    if elapsed <= 0:
        return float("inf")
    return (moved / elapsed) * 3.6


def evaluate(
    attempt: CheckInAttempt,
    salon_location: Location,
    *,
    policy: VerificationPolicy,
    now: float,
    previous: CheckIn | None = None,
    flagged_user: bool = False,
) -> Decision:
    """Decide whether a check-in can be trusted without staff review."""
    lat, lon = attempt.latitude, attempt.longitude
    if lat is None or lon is None:
        return Decision.review(VerificationReason.NO_LOCATION, None, "Manual verification required")

    distance = distance_meters(lat, lon, salon_location.latitude, salon_location.longitude)

    if attempt.accuracy_meters is not None and attempt.accuracy_meters > policy.max_accuracy_meters:
        return Decision.review(
            VerificationReason.NO_LOCATION,
            distance,
            f"Location accuracy too low ({attempt.accuracy_meters:.0f}m)",
        )

    if distance > policy.auto_approve_radius_meters:
        return Decision.review(
            VerificationReason.TOO_FAR,
            distance,
            f"You are {distance:.0f}m away, outside the auto-approval range "
            f"({policy.auto_approve_radius_meters:.0f}m)",
        )

    if previous is not None:
        speed = implied_speed_kmh(previous, lat, lon, attempt.accuracy_meters, now=now)
        if speed > policy.max_speed_kmh:
            logger.info("Implausible movement between check-ins", extra={"reason": f"{speed:.0f}km/h"})
            return Decision.review(
                VerificationReason.SUSPICIOUS,
                distance,
                "Suspicious pattern detected: location changed faster than travel allows",
            )

    if flagged_user:
        return Decision.review(
            VerificationReason.SUSPICIOUS,
            distance,
            "User flagged as suspicious, requires staff verification",
        )

    return Decision.approve(distance)
