import pytest

from salon_queue.models import CheckIn, Location, VerificationReason
from salon_queue.verification import CheckInAttempt, VerificationPolicy, evaluate, implied_speed_kmh

SALON = Location(40.7128, -74.0060)
POLICY = VerificationPolicy()

# Roughly 0.00045 degrees of latitude per 50 meters.
DEG_PER_METER = 1 / 111_195


def _north(meters: float) -> tuple[float, float]:
    return SALON.latitude + meters * DEG_PER_METER, SALON.longitude


def test_missing_location_needs_review():
    d = evaluate(CheckInAttempt(), SALON, policy=POLICY, now=0.0)
    assert not d.auto_approved
    assert d.reason is VerificationReason.NO_LOCATION
    assert d.distance_meters is None


def test_close_and_accurate_is_auto_approved():
    lat, lon = _north(50)
    d = evaluate(CheckInAttempt(lat, lon, 20.0), SALON, policy=POLICY, now=0.0)
    assert d.auto_approved
    assert d.reason is None
    assert d.distance_meters == pytest.approx(50, abs=1)


def test_low_accuracy_needs_review_even_when_close():
    lat, lon = _north(10)
    d = evaluate(CheckInAttempt(lat, lon, 200.0), SALON, policy=POLICY, now=0.0)
    assert not d.auto_approved
    assert d.reason is VerificationReason.NO_LOCATION
    assert d.distance_meters is not None


def test_far_away_needs_review():
    lat, lon = _north(400)
    d = evaluate(CheckInAttempt(lat, lon, 10.0), SALON, policy=POLICY, now=0.0)
    assert not d.auto_approved
    assert d.reason is VerificationReason.TOO_FAR
    assert "400m" in d.message


def test_radius_boundary_is_inclusive():
    policy = VerificationPolicy(auto_approve_radius_meters=150.0)
    lat, lon = _north(149)
    assert evaluate(CheckInAttempt(lat, lon, 5.0), SALON, policy=policy, now=0.0).auto_approved


def test_approval_is_monotone_in_distance():
    previous = None
    approved = []
    for meters in range(0, 400, 10):
        lat, lon = _north(meters)
        d = evaluate(CheckInAttempt(lat, lon, 10.0), SALON, policy=POLICY, now=0.0, previous=previous)
        approved.append(d.auto_approved)
    # Once a distance is refused, every larger distance is refused too.
    first_refusal = approved.index(False)
    assert all(approved[:first_refusal])
    assert not any(approved[first_refusal:])


def test_implausible_jump_is_suspicious():
    lat, lon = _north(20)
    previous = CheckIn(latitude=SALON.latitude + 0.1, longitude=SALON.longitude,
                       accuracy_meters=10.0, distance_meters=11_000.0, captured_at=0.0)
    # ~11 km in 60 seconds
    d = evaluate(CheckInAttempt(lat, lon, 10.0), SALON, policy=POLICY, now=60.0, previous=previous)
    assert not d.auto_approved
    assert d.reason is VerificationReason.SUSPICIOUS


def test_jitter_within_accuracy_is_not_movement():
    previous = CheckIn(latitude=SALON.latitude, longitude=SALON.longitude,
                       accuracy_meters=30.0, distance_meters=0.0, captured_at=100.0)
    lat, lon = _north(40)
    assert implied_speed_kmh(previous, lat, lon, 20.0, now=100.0) == 0.0


def test_jump_with_no_elapsed_time_is_infinite():
    previous = CheckIn(latitude=SALON.latitude, longitude=SALON.longitude,
                       accuracy_meters=5.0, distance_meters=0.0, captured_at=100.0)
    lat, lon = _north(120)
    assert implied_speed_kmh(previous, lat, lon, 5.0, now=100.0) == float("inf")


def test_flagged_user_goes_to_review():
    lat, lon = _north(10)
    d = evaluate(CheckInAttempt(lat, lon, 5.0), SALON, policy=POLICY, now=0.0, flagged_user=True)
    assert not d.auto_approved
    assert d.reason is VerificationReason.SUSPICIOUS
