import pytest

from keyward.service.account import AccountSecurityService, validate_password_strength
from keyward.service.errors import (
    AlreadyUsedError,
    AuthenticationError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    ValidationError,
)
from keyward.service.refresh import RefreshTokenService

GOOD_PASSWORD = "Correct#Horse1"
NEW_PASSWORD = "Battery$Staple2"


@pytest.fixture
def account(store, settings, hasher, notifier, clock):
    return AccountSecurityService(
        store, settings, hasher=hasher, notifier=notifier, now_fn=clock
    )


@pytest.fixture
def refresh(store, settings, clock):
    return RefreshTokenService(store, settings, now_fn=clock)


@pytest.fixture
def user(store, hasher):
    created = store.create_user("reset-me@example.com")
    store.save_password(created.id, hasher.hash(GOOD_PASSWORD), hasher.algorithm)
    return created


@pytest.mark.parametrize(
    "password",
    ["", "Sh0rt!", "alllowercase1!", "ALLUPPERCASE1!", "NoDigitsHere!", "NoSpecial123", "A1!" + "a" * 98],
)
def test_password_strength_rejections(password):
    with pytest.raises(ValidationError):
        validate_password_strength(password)


def test_password_strength_accepts_complex_password():
    validate_password_strength(GOOD_PASSWORD)


def test_request_reset_for_unknown_email_is_silent(account, notifier, store):
    assert account.request_password_reset("nobody@example.com") is None
    assert notifier.resets == []
    assert store.ephemeral_tokens == {}


def test_reset_request_matches_email_regardless_of_case(account, notifier, user):
    account.request_password_reset("  Reset-Me@Example.COM ")
    assert len(notifier.resets) == 1
    assert notifier.resets[0][0] == user.email


def test_reset_flow_updates_password_and_revokes_refresh_tokens(
    account, refresh, notifier, store, hasher, user
):
    issued = [refresh.issue(user.id, device_info=f"device-{i}") for i in range(3)]
    account.request_password_reset(user.email)
    assert len(notifier.resets) == 1
    to_email, token = notifier.resets[0]
    assert to_email == user.email

    account.reset_password(token, NEW_PASSWORD)

    pwd_hash, algo = store.get_password_record(user.id)
    assert algo == "argon2id"
    assert hasher.verify(pwd_hash, NEW_PASSWORD)
    assert not hasher.verify(pwd_hash, GOOD_PASSWORD)
    assert all(refresh.validate(item.token_hash) is None for item in issued)
    assert notifier.changed == [(user.email, True)]

    with pytest.raises(AlreadyUsedError):
        account.reset_password(token, "Another#Pass3")


def test_reset_validates_password_before_consuming(account, notifier, user):
    account.request_password_reset(user.email)
    _, token = notifier.resets[0]
    with pytest.raises(ValidationError):
        account.reset_password(token, "weak")
    account.reset_password(token, NEW_PASSWORD)


def test_reset_token_expires(account, notifier, clock, user):
    account.request_password_reset(user.email)
    _, token = notifier.resets[0]
    clock.advance(hours=24, seconds=1)
    with pytest.raises(ExpiredError):
        account.reset_password(token, NEW_PASSWORD)


def test_second_reset_request_invalidates_first(account, notifier, clock, user):
    account.request_password_reset(user.email)
    clock.advance(minutes=5)
    account.request_password_reset(user.email)
    first, second = (token for _, token in notifier.resets)

    with pytest.raises(AlreadyUsedError):
        account.reset_password(first, NEW_PASSWORD)
    account.reset_password(second, NEW_PASSWORD)


def test_change_password(account, refresh, store, hasher, notifier, user):
    issued = refresh.issue(user.id)
    account.change_password(user.id, GOOD_PASSWORD, NEW_PASSWORD)
    pwd_hash, _ = store.get_password_record(user.id)
    assert hasher.verify(pwd_hash, NEW_PASSWORD)
    assert notifier.changed == [(user.email, False)]
    # other sessions are left alone on an authenticated change
    assert refresh.validate(issued.token_hash) == user.id


def test_change_password_rejections(account, user):
    with pytest.raises(NotFoundError):
        account.change_password("missing", GOOD_PASSWORD, NEW_PASSWORD)
    with pytest.raises(AuthenticationError):
        account.change_password(user.id, "Wrong#Pass9", NEW_PASSWORD)
    with pytest.raises(ValidationError):
        account.change_password(user.id, GOOD_PASSWORD, "weak")


def test_change_password_without_credential(account, store):
    bare = store.create_user("no-password@example.com")
    with pytest.raises(AuthenticationError):
        account.change_password(bare.id, GOOD_PASSWORD, NEW_PASSWORD)


def test_email_verification_flow(account, notifier, user):
    status = account.email_verification_status(user.id)
    assert status == {
        "is_verified": False,
        "email": user.email,
        "pending_verification": False,
    }

    account.send_email_verification(user.id)
    assert account.email_verification_status(user.id)["pending_verification"] is True
    to_email, token = notifier.verifications[0]
    assert to_email == user.email

    verified = account.verify_email(token)
    assert verified.is_email_verified is True
    assert account.email_verification_status(user.id) == {
        "is_verified": True,
        "email": user.email,
        "pending_verification": False,
    }
    with pytest.raises(AlreadyUsedError):
        account.verify_email(token)


def test_email_change_applies_new_address_on_verify(account, notifier, user):
    account.send_email_verification(user.id, "moved@example.com")
    to_email, token = notifier.verifications[0]
    assert to_email == "moved@example.com"
    updated = account.verify_email(token)
    assert updated.email == "moved@example.com"
    assert updated.is_email_verified is True


def test_email_change_to_taken_address(account, store, user):
    store.create_user("taken@example.com")
    with pytest.raises(ConflictError):
        account.send_email_verification(user.id, "taken@example.com")


def test_email_verification_expiry_and_unknown(account, notifier, clock, user):
    with pytest.raises(NotFoundError):
        account.send_email_verification("missing")
    with pytest.raises(NotFoundError):
        account.verify_email("not-a-token")

    account.send_email_verification(user.id)
    _, token = notifier.verifications[0]
    clock.advance(hours=24)
    with pytest.raises(ExpiredError):
        account.verify_email(token)
    assert account.email_verification_status(user.id)["pending_verification"] is False


def test_verification_token_is_not_a_reset_token(account, notifier, user):
    account.send_email_verification(user.id)
    _, token = notifier.verifications[0]
    with pytest.raises(NotFoundError):
        account.reset_password(token, NEW_PASSWORD)
    assert account.verify_email(token).is_email_verified

