from salon_queue.errors import PersistenceError
from salon_queue.reputation import (
    INITIAL_SCORE,
    JsonLinesReputationRepository,
    MemoryReputationRepository,
    ReputationAction,
    ReputationBook,
    TrustLevel,
    trust_level_for,
)


def test_new_user_starts_neutral():
    book = ReputationBook()
    rep = book.get("u1")
    assert rep.score == INITIAL_SCORE
    assert rep.trust_level is TrustLevel.NEW


def test_trust_thresholds():
    assert trust_level_for(100) is TrustLevel.TRUSTED
    assert trust_level_for(90) is TrustLevel.TRUSTED
    assert trust_level_for(89) is TrustLevel.REGULAR
    assert trust_level_for(70) is TrustLevel.REGULAR
    assert trust_level_for(40) is TrustLevel.NEW
    assert trust_level_for(20) is TrustLevel.SUSPICIOUS
    assert trust_level_for(19) is TrustLevel.BANNED


def test_actions_move_score_and_counters():
    book = ReputationBook()
    book.record("u1", ReputationAction.SUCCESSFUL_CHECKIN)
    book.record("u1", ReputationAction.COMPLETED_SERVICE)
    book.record("u1", ReputationAction.NO_SHOW)
    rep = book.record("u1", ReputationAction.FALSE_CHECKIN)
    assert rep.score == INITIAL_SCORE + 2 + 1 - 5 - 10
    assert (rep.successful_check_ins, rep.completed_services, rep.no_shows, rep.false_check_ins) == (1, 1, 1, 1)


def test_score_is_clamped():
    book = ReputationBook()
    for _ in range(10):
        book.record("bad", ReputationAction.FALSE_CHECKIN)
    assert book.get("bad").score == 0
    assert book.trust_level("bad") is TrustLevel.BANNED

    for _ in range(40):
        book.record("good", ReputationAction.SUCCESSFUL_CHECKIN)
    assert book.get("good").score == 100


class BrokenLedger(MemoryReputationRepository):
    def save(self, reputation):
        raise PersistenceError("disk unavailable")


def test_ban_survives_a_restart(tmp_path):
    path = tmp_path / "reputation.jsonl"
    book = ReputationBook(JsonLinesReputationRepository(path), persist_retry_delay=0.0)
    for _ in range(4):
        book.record("bad", ReputationAction.FALSE_CHECKIN)
    book.record("good", ReputationAction.COMPLETED_SERVICE)

    restarted = ReputationBook(JsonLinesReputationRepository(path))
    assert restarted.load() == 2
    assert restarted.trust_level("bad") is TrustLevel.BANNED
    assert restarted.get("bad").false_check_ins == 4
    assert restarted.get("good").score == INITIAL_SCORE + 1


def test_unpersisted_update_still_applies_in_memory():
    book = ReputationBook(BrokenLedger(), persist_retry_delay=0.0)
    rep = book.record("u1", ReputationAction.NO_SHOW)
    assert rep.score == INITIAL_SCORE - 5
    assert book.get("u1").no_shows == 1
