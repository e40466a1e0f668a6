from __future__ import annotations

# Wait-time helpers.
#
# An entry waits for everyone ranked ahead of it plus whatever is left of the
# service currently in the chair:
#   estimated_wait = sum(duration of entries ahead) + remaining(in-progress)
#
# The remaining time of the in-progress entry is its own selected duration
# minus the time elapsed since service started, never below 1 minute.

import math
from collections.abc import Iterable

from .models import QueueEntry

MIN_REMAINING_MINUTES = 1


def remaining_service_minutes(entry: QueueEntry | None, *, now: float) -> int:
    """Minutes left for the entry currently being served (0 if none)."""
    if entry is None:
        return 0
    started = entry.service_started_at if entry.service_started_at is not None else now
    elapsed_minutes = max(0.0, now - started) / 60.0
    remaining = math.ceil(entry.total_duration_minutes - elapsed_minutes)
    return max(MIN_REMAINING_MINUTES, remaining)


def compute_wait_minutes(
    ranked: Iterable[QueueEntry], *, in_progress: QueueEntry | None, now: float
) -> dict[str, int]:
    """Estimated wait per entry id.

    Args:
        ranked: the salon's active ranking, already ordered by position.
        in_progress: the entry currently being served, if any.
        now: epoch seconds used to age the in-progress service.

    Returns:
        Mapping of entry id to estimated minutes before that entry is served.
    """
    ahead = remaining_service_minutes(in_progress, now=now)
    waits: dict[str, int] = {}
    for entry in ranked:
        waits[entry.id] = ahead
        ahead += entry.total_duration_minutes
    return waits
