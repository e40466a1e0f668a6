from __future__ import annotations

# User reputation.
#
# Each user starts at 50 points. Outcomes move the score, clamped to 0..100:
#   successful check-in   +2
#   completed service     +1
#   no-show               -5
#   rejected check-in    -10
#
# The score maps to a trust level. Suspicious users always go to manual
# verification; banned users cannot join a queue.
#
# The ledger is persisted like queue entries, so a restart does not reset a
# banned user back to the initial score.

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

from .errors import PersistenceError
from .repository import JsonLinesLog, retry_with_backoff

logger = logging.getLogger(__name__)

INITIAL_SCORE = 50


class TrustLevel(str, Enum):
    TRUSTED = "trusted"
    REGULAR = "regular"
    NEW = "new"
    SUSPICIOUS = "suspicious"
    BANNED = "banned"


class ReputationAction(str, Enum):
    SUCCESSFUL_CHECKIN = "successful_checkin"
    FALSE_CHECKIN = "false_checkin"
    NO_SHOW = "no_show"
    COMPLETED_SERVICE = "completed_service"


SCORE_CHANGES = {
    ReputationAction.SUCCESSFUL_CHECKIN: 2,
    ReputationAction.FALSE_CHECKIN: -10,
    ReputationAction.NO_SHOW: -5,
    ReputationAction.COMPLETED_SERVICE: 1,
}


def trust_level_for(score: int) -> TrustLevel:
    if score >= 90:
        return TrustLevel.TRUSTED
    if score >= 70:
        return TrustLevel.REGULAR
    if score >= 40:
        return TrustLevel.NEW
    if score >= 20:
        return TrustLevel.SUSPICIOUS
    return TrustLevel.BANNED


@dataclass(frozen=True)
class Reputation:
    user_id: str
    score: int = INITIAL_SCORE
    successful_check_ins: int = 0
    false_check_ins: int = 0
    no_shows: int = 0
    completed_services: int = 0

    @property
    def trust_level(self) -> TrustLevel:
        return trust_level_for(self.score)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trust_level"] = self.trust_level.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Reputation:
        return cls(
            user_id=str(data["user_id"]),
            score=int(data.get("score", INITIAL_SCORE)),
            successful_check_ins=int(data.get("successful_check_ins", 0)),
            false_check_ins=int(data.get("false_check_ins", 0)),
            no_shows=int(data.get("no_shows", 0)),
            completed_services=int(data.get("completed_services", 0)),
        )


# -------------------- persistence --------------------


class ReputationRepository(ABC):
    @abstractmethod
    def save(self, reputation: Reputation) -> None:
        """Persist one user's record. Raise PersistenceError on failure."""
        raise NotImplementedError

    @abstractmethod
    def load_all(self) -> list[Reputation]:
        raise NotImplementedError


class MemoryReputationRepository(ReputationRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_user: dict[str, Reputation] = {}

    def save(self, reputation: Reputation) -> None:
        with self._lock:
            self._by_user[reputation.user_id] = reputation

    def load_all(self) -> list[Reputation]:
        with self._lock:
            return list(self._by_user.values())


class JsonLinesReputationRepository(ReputationRepository):
    def __init__(self, path: str | Path = "./data/reputation.jsonl") -> None:
        self._log = JsonLinesLog(path)

    def save(self, reputation: Reputation) -> None:
        self._log.append({"ts": time.time(), "reputation": reputation.to_dict()})

    def load_all(self) -> list[Reputation]:
        latest: dict[str, Reputation] = {}
        for record in self._log.records():
            data = record.get("reputation")
            if isinstance(data, dict):
                rep = Reputation.from_dict(data)
                latest[rep.user_id] = rep
        return list(latest.values())


# -------------------- ledger --------------------

_COUNTERS = {
    ReputationAction.SUCCESSFUL_CHECKIN: "successful_check_ins",
    ReputationAction.FALSE_CHECKIN: "false_check_ins",
    ReputationAction.NO_SHOW: "no_shows",
    ReputationAction.COMPLETED_SERVICE: "completed_services",
}


class ReputationBook:
    """Reputation ledger, safe to call from any salon's critical section.

    Updates are written to the repository before they become visible. If the
    write keeps failing the update still applies in memory, so this process
    enforces it, and the failure is logged for the operator.
    """

    def __init__(
        self,
        repository: ReputationRepository | None = None,
        *,
        persist_retry_attempts: int = 3,
        persist_retry_delay: float = 0.05,
    ) -> None:
        self.repository = repository or MemoryReputationRepository()
        self._persist_retry_attempts = persist_retry_attempts
        self._persist_retry_delay = persist_retry_delay
        self._lock = threading.Lock()
        self._by_user: dict[str, Reputation] = {}

    def load(self) -> int:
        records = self.repository.load_all()
        with self._lock:
            for rep in records:
                self._by_user[rep.user_id] = rep
        logger.info("Loaded %s reputation records", len(records))
        return len(records)

    def get(self, user_id: str) -> Reputation:
        with self._lock:
            return self._by_user.get(user_id) or Reputation(user_id=user_id)

    def trust_level(self, user_id: str) -> TrustLevel:
        return self.get(user_id).trust_level

    def record(self, user_id: str, action: ReputationAction) -> Reputation:
        with self._lock:
            rep = self._by_user.get(user_id) or Reputation(user_id=user_id)
            name = _COUNTERS[action]
            score = max(0, min(100, rep.score + SCORE_CHANGES[action]))
            rep = replace(rep, score=score, **{name: getattr(rep, name) + 1})
            try:
                retry_with_backoff(
                    lambda: self.repository.save(rep),
                    attempts=self._persist_retry_attempts,
                    base_delay=self._persist_retry_delay,
                )
            except PersistenceError:
                logger.exception("Reputation update not persisted", extra={"user_id": user_id})
            self._by_user[user_id] = rep

        logger.info(
            "Reputation updated: %s -> score %s (%s)",
            action.value,
            rep.score,
            rep.trust_level.value,
            extra={"user_id": user_id},
        )
        return rep
