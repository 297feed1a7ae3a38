import pytest

from keyward.service.codec import hash_token
from keyward.service.errors import ValidationError
from keyward.service.refresh import RefreshTokenService


@pytest.fixture
def refresh(store, settings, clock):
    return RefreshTokenService(store, settings, now_fn=clock)


def test_issue_persists_only_the_hash(refresh, store):
    issued = refresh.issue("user-1", device_info="laptop", origin_addr="10.0.0.1")
    assert issued.token_hash == hash_token(issued.token)
    assert issued.token not in store.refresh_tokens
    record = store.refresh_tokens[issued.token_hash]
    assert record.device_info == "laptop"
    assert record.origin_addr == "10.0.0.1"
    assert refresh.validate(issued.token_hash) == "user-1"


def test_store_precomputed_hash(refresh, clock):
    record = refresh.store("user-2", hash_token("opaque"), device_info="phone")
    assert record.expires_at == clock() + refresh.settings.refresh_token_ttl
    assert refresh.validate(hash_token("opaque")) == "user-2"

    with pytest.raises(ValidationError):
        refresh.store("user-2", "")


def test_validate_unknown_and_expired(refresh, clock):
    issued = refresh.issue("user-1")
    assert refresh.validate("unknown") is None
    assert refresh.validate("") is None
    clock.advance(days=7)
    assert refresh.validate(issued.token_hash) is None


def test_revoke_single_token(refresh):
    keep = refresh.issue("user-1")
    drop = refresh.issue("user-1")
    refresh.revoke(drop.token_hash)
    refresh.revoke(drop.token_hash)
    assert refresh.validate(drop.token_hash) is None
    assert refresh.validate(keep.token_hash) == "user-1"


def test_revoke_all_is_scoped_to_user(refresh):
    mine = [refresh.issue("user-1") for _ in range(3)]
    theirs = refresh.issue("user-2")
    assert refresh.revoke_all("user-1") == 3
    assert refresh.revoke_all("user-1") == 0
    assert all(refresh.validate(t.token_hash) is None for t in mine)
    assert refresh.validate(theirs.token_hash) == "user-2"


def test_purge_expired(refresh, store, clock):
    refresh.issue("user-1")
    clock.advance(days=3)
    live = refresh.issue("user-1")
    clock.advance(days=5)
    assert refresh.purge_expired() == 1
    assert list(store.refresh_tokens) == [live.token_hash]
