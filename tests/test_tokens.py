import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from keyward.service.codec import hash_token
from keyward.service.errors import AlreadyUsedError, ExpiredError, NotFoundError
from keyward.service.tokens import EphemeralTokenManager
from keyward.storage.models import TokenPurpose


@pytest.fixture
def resets(store, clock):
    return EphemeralTokenManager(
        store,
        TokenPurpose.PASSWORD_RESET,
        ttl=timedelta(hours=24),
        hash_at_rest=True,
        now_fn=clock,
    )


@pytest.fixture
def verifications(store, clock):
    return EphemeralTokenManager(
        store,
        TokenPurpose.EMAIL_VERIFICATION,
        ttl=timedelta(hours=24),
        hash_at_rest=False,
        now_fn=clock,
    )


def test_issue_stores_hash_not_raw_token(resets, store):
    raw = resets.issue("user-1")
    assert len(raw) == 64
    keys = [t.token_key for t in store.ephemeral_tokens.values()]
    assert keys == [hash_token(raw)]


def test_verification_tokens_keep_payload(verifications):
    raw = verifications.issue("user-1", {"email": "new@example.com"})
    consumed = verifications.consume(raw)
    assert consumed.subject_id == "user-1"
    assert consumed.payload == {"email": "new@example.com"}


def test_consume_is_single_use(resets):
    raw = resets.issue("user-1")
    assert resets.consume(raw).subject_id == "user-1"
    with pytest.raises(AlreadyUsedError):
        resets.consume(raw)


def test_unknown_and_empty_tokens(resets):
    with pytest.raises(NotFoundError):
        resets.consume("deadbeef")
    with pytest.raises(NotFoundError):
        resets.consume("")


def test_expired_token_is_rejected(resets, clock):
    raw = resets.issue("user-1")
    clock.advance(hours=24)
    with pytest.raises(ExpiredError):
        resets.consume(raw)


def test_token_is_valid_just_before_expiry(resets, clock):
    raw = resets.issue("user-1")
    clock.advance(hours=23, minutes=59)
    assert resets.consume(raw).subject_id == "user-1"


def test_issue_invalidates_earlier_pending_tokens(resets, clock):
    first = resets.issue("user-1")
    clock.advance(minutes=1)
    second = resets.issue("user-1")

    with pytest.raises(AlreadyUsedError):
        resets.consume(first)
    assert resets.consume(second).subject_id == "user-1"


def test_issue_for_one_subject_leaves_others_alone(resets):
    mine = resets.issue("user-1")
    resets.issue("user-2")
    assert resets.consume(mine).subject_id == "user-1"


def test_purposes_are_isolated(store, clock, verifications):
    # a verification token must not be accepted as a reset token
    same_key = EphemeralTokenManager(
        store,
        TokenPurpose.PASSWORD_RESET,
        ttl=timedelta(hours=1),
        hash_at_rest=False,
        now_fn=clock,
    )
    raw = verifications.issue("user-1")
    with pytest.raises(NotFoundError):
        same_key.consume(raw)
    assert verifications.has_pending("user-1") is True


def test_has_pending_tracks_state(resets, clock):
    assert resets.has_pending("user-1") is False
    raw = resets.issue("user-1")
    assert resets.has_pending("user-1") is True
    resets.consume(raw)
    assert resets.has_pending("user-1") is False

    resets.issue("user-1")
    clock.advance(hours=25)
    assert resets.has_pending("user-1") is False


def test_purge_expired_removes_lapsed_rows(resets, store, clock):
    resets.issue("user-1")
    resets.issue("user-2")
    clock.advance(hours=25)
    assert resets.purge_expired() == 2
    assert store.ephemeral_tokens == {}


def test_concurrent_consume_succeeds_exactly_once(resets):
    raw = resets.issue("user-1")
    workers = 8
    barrier = threading.Barrier(workers)

    def attempt(_):
        barrier.wait()
        try:
            resets.consume(raw)
            return "ok"
        except AlreadyUsedError:
            return "used"

    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = list(pool.map(attempt, range(workers)))

    assert results.count("ok") == 1
    assert results.count("used") == workers - 1


def test_concurrent_issue_leaves_one_pending_token(resets, store):
    workers = 8
    barrier = threading.Barrier(workers)

    def issue(_):
        barrier.wait()
        return resets.issue("user-1")

    with ThreadPoolExecutor(max_workers=workers) as pool:
        issued = list(pool.map(issue, range(workers)))

    pending = [t for t in store.ephemeral_tokens.values() if t.used_at is None]
    assert len(store.ephemeral_tokens) == workers
    assert len(pending) == 1

    outcomes = []
    for raw in issued:
        try:
            resets.consume(raw)
            outcomes.append("ok")
        except AlreadyUsedError:
            outcomes.append("used")
    assert outcomes.count("ok") == 1
