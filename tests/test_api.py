from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from keyward.app import create_app
from keyward.service.runtime import get_runtime
from keyward.service.totp import derive_code

PASSWORD = "Correct#Horse1"


@pytest.fixture
def client():
    return TestClient(create_app())


@pytest.fixture
def runtime(notifier):
    rt = get_runtime()
    rt.account.notifier = notifier
    return rt


@pytest.fixture
def user(runtime):
    created = runtime.store.create_user("api-user@example.com")
    runtime.store.save_password(
        created.id, runtime.hasher.hash(PASSWORD), runtime.hasher.algorithm
    )
    return created


def _identity(user, session_id="sess-1"):
    return {"X-User-ID": user.id, "X-Session-ID": session_id}


def _csrf(client, user, session_id="sess-1"):
    resp = client.post("/v1/security/csrf-token", headers=_identity(user, session_id))
    assert resp.status_code == 200
    return {**_identity(user, session_id), "X-CSRF-Token": resp.json()["data"]["token"]}


def test_missing_identity_is_unauthorized(client):
    resp = client.get("/v1/security/2fa/status")
    assert resp.status_code == 401
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "unauthorized"
    assert body["request_id"]


def test_response_headers(client, user):
    resp = client.get(
        "/v1/security/2fa/status",
        headers={**_identity(user), "X-Request-ID": "req-123"},
    )
    assert resp.status_code == 200
    assert resp.headers["X-Request-ID"] == "req-123"
    assert "no-store" in resp.headers["Cache-Control"]
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["API-Version"]


def test_two_factor_flow_over_http(client, user):
    headers = _csrf(client, user)
    enrolled = client.post("/v1/security/2fa/enable", headers=headers)
    assert enrolled.status_code == 200
    data = enrolled.json()["data"]
    assert data["enrollment_uri"].startswith("otpauth://totp/")
    assert len(data["backup_codes"]) == 10

    code = derive_code(data["secret"], datetime.now(timezone.utc))
    confirmed = client.post(
        "/v1/security/2fa/confirm", json={"code": code}, headers=_csrf(client, user)
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["data"]["enabled"] is True

    ok = client.post(
        "/v1/security/2fa/verify", json={"code": data["backup_codes"][0]}, headers=_identity(user)
    )
    assert ok.status_code == 200
    assert ok.json()["data"] == {"valid": True}

    replay = client.post(
        "/v1/security/2fa/verify", json={"code": data["backup_codes"][0]}, headers=_identity(user)
    )
    assert replay.status_code == 401

    status = client.get("/v1/security/2fa/status", headers=_identity(user)).json()["data"]
    assert status["backup_codes_remaining"] == 9

    again = client.post("/v1/security/2fa/enable", headers=_csrf(client, user))
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "conflict"


def test_state_changing_routes_require_single_use_csrf(client, user):
    no_token = client.post("/v1/security/2fa/enable", headers=_identity(user))
    assert no_token.status_code == 403
    assert no_token.json()["error"]["code"] == "forbidden"

    headers = _csrf(client, user)
    wrong_session = {**headers, "X-Session-ID": "sess-2"}
    assert client.post("/v1/security/2fa/enable", headers=wrong_session).status_code == 403

    assert client.post("/v1/security/2fa/enable", headers=headers).status_code == 200
    replayed = client.post("/v1/security/2fa/enable", headers=headers)
    assert replayed.status_code == 403


def test_confirm_without_enrollment_is_not_found(client, user):
    resp = client.post(
        "/v1/security/2fa/confirm", json={"code": "123456"}, headers=_csrf(client, user)
    )
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_password_reset_over_http(client, runtime, notifier, user):
    unknown = client.post(
        "/v1/security/password/request-reset", json={"email": "ghost@example.com"}
    )
    known = client.post(
        "/v1/security/password/request-reset", json={"email": "API-User@example.com"}
    )
    assert unknown.status_code == known.status_code == 200
    assert unknown.json()["data"] == known.json()["data"]
    assert len(notifier.resets) == 1
    _, token = notifier.resets[0]

    refresh = runtime.refresh_tokens.issue(user.id)
    weak = client.post(
        "/v1/security/password/reset", json={"token": token, "new_password": "weak"}
    )
    assert weak.status_code == 400
    assert weak.json()["error"]["code"] == "validation_error"

    done = client.post(
        "/v1/security/password/reset",
        json={"token": token, "new_password": "Battery$Staple2"},
    )
    assert done.status_code == 200
    assert runtime.refresh_tokens.validate(refresh.token_hash) is None

    reused = client.post(
        "/v1/security/password/reset",
        json={"token": token, "new_password": "Battery$Staple3"},
    )
    assert reused.status_code == 409
    assert reused.json()["error"]["code"] == "already_used"


def test_invalid_email_is_a_validation_error(client):
    resp = client.post("/v1/security/password/request-reset", json={"email": "not-an-email"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "validation_error"
    assert body["error"]["details"]


def test_change_password_over_http(client, user):
    wrong = client.post(
        "/v1/security/password/change",
        json={"current_password": "Nope#Nope1", "new_password": "Battery$Staple2"},
        headers=_csrf(client, user),
    )
    assert wrong.status_code == 401

    ok = client.post(
        "/v1/security/password/change",
        json={"current_password": PASSWORD, "new_password": "Battery$Staple2"},
        headers=_csrf(client, user),
    )
    assert ok.status_code == 200


def test_email_verification_over_http(client, runtime, notifier, user):
    sent = client.post(
        "/v1/security/email/send-verification", json={}, headers=_csrf(client, user)
    )
    assert sent.status_code == 200
    status = client.get("/v1/security/email/status", headers=_identity(user)).json()["data"]
    assert status["pending_verification"] is True

    _, token = notifier.verifications[0]
    verified = client.post("/v1/security/email/verify", json={"token": token})
    assert verified.status_code == 200
    assert verified.json()["data"]["is_verified"] is True


def test_expired_verification_token_is_gone(client, runtime, notifier, user):
    runtime.account.verification_tokens.ttl = timedelta(seconds=-1)
    runtime.account.send_email_verification(user.id)
    _, token = notifier.verifications[0]
    resp = client.post("/v1/security/email/verify", json={"token": token})
    assert resp.status_code == 410
    assert resp.json()["error"]["code"] == "expired"


def test_revoke_all_refresh_tokens_over_http(client, runtime, user):
    for _ in range(2):
        runtime.refresh_tokens.issue(user.id)
    resp = client.post(
        "/v1/security/refresh-tokens/revoke-all", headers=_csrf(client, user)
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == {"count": 2}


def test_admin_session_routes(client, runtime, user):
    admin = runtime.store.create_user("admin@example.com", role="admin")
    current = runtime.admin_sessions.create(admin.id, "10.0.0.1", "pytest")
    runtime.admin_sessions.create(admin.id, "10.0.0.2", "other")

    assert client.get("/v1/security/admin/sessions").status_code == 401
    assert (
        client.get(
            "/v1/security/admin/sessions", headers={"X-Admin-Session": "bogus"}
        ).status_code
        == 401
    )
    not_admin = runtime.admin_sessions.create(user.id)
    forbidden = client.get(
        "/v1/security/admin/sessions", headers={"X-Admin-Session": not_admin}
    )
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "forbidden"

    headers = {"X-Admin-Session": current}
    listing = client.get("/v1/security/admin/sessions", headers=headers).json()["data"]
    assert len(listing["sessions"]) == 2
    current_views = [s for s in listing["sessions"] if s["is_current"]]
    assert [s["id"] for s in current_views] == [listing["current_session_id"]]

    other_id = next(s["id"] for s in listing["sessions"] if not s["is_current"])
    assert client.delete(f"/v1/security/admin/sessions/{other_id}", headers=headers).status_code == 200
    assert client.delete(f"/v1/security/admin/sessions/{other_id}", headers=headers).status_code == 404

    wiped = client.delete("/v1/security/admin/sessions", headers=headers)
    assert wiped.json()["data"] == {"count": 1}
    assert client.get("/v1/security/admin/sessions", headers=headers).status_code == 401


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["type"] == "memory"
    assert body["checks"]["redis"]["status"] == "not_configured"
