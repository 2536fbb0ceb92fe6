"""
Tests for /oauth/validate, /oauth/authorize, /oauth/authorize-with-token and /oauth/token
through the FastAPI app and SQLite.
"""
import json
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from portal_oauth.audit import EVENT_CODE_ISSUED, EVENT_LOGIN_FAIL, EVENT_TOKEN_ISSUED
from portal_oauth.database import SessionLocal, engine, init_db
from portal_oauth.main import app
from portal_oauth.models import AuditLog, AuthorizationCode, Base
from portal_oauth.oauth import get_clock
from portal_oauth.pkce import generate_pkce
from portal_oauth.seed import create_application, create_user, grant_access, revoke_access
from portal_oauth.tokens import decode_access_token, mint_session_token

REDIRECT = "https://app.test/cb"


@pytest.fixture
def client():
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def registry(client):
    """Fresh tables; one application with user U granted 'viewer' and one user with no grant."""
    Base.metadata.drop_all(bind=engine)
    init_db()
    db = SessionLocal()
    try:
        application, _ = create_application(db, name="Test App", redirect_uri=REDIRECT, roles=["viewer", "editor"])
        user = create_user(db, username="u", email="u@example.com", password="u-password")
        outsider = create_user(db, username="o", email="o@example.com", password="o-password")
        grant_access(db, user, application, "viewer")
        yield {"db": db, "app": application, "client_id": application.client_id, "user": user, "outsider": outsider}
    finally:
        db.close()


def _authorize(client, registry, challenge, **overrides):
    body = {
        "email": "u@example.com",
        "password": "u-password",
        "clientId": registry["client_id"],
        "redirectUrl": REDIRECT,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    body.update(overrides)
    return client.post("/oauth/authorize", json=body)


def _token(client, code, verifier, client_id):
    return client.post("/oauth/token", json={"code": code, "code_verifier": verifier, "clientId": client_id})


# --- validate ---


def test_validate_success_hides_secret(client, registry):
    r = client.get(
        "/oauth/validate",
        params={
            "clientId": registry["client_id"],
            "redirectUrl": REDIRECT,
            "code_challenge": "abc",
            "code_challenge_method": "S256",
        },
    )
    assert r.status_code == 200
    data = r.json()
    assert data == {"success": True, "application": {"name": "Test App", "clientId": registry["client_id"]}}
    assert "secret" not in r.text.lower()


def test_validate_missing_params(client, registry):
    r = client.get("/oauth/validate", params={"clientId": registry["client_id"]})
    assert r.status_code == 400
    data = r.json()
    assert data["success"] is False
    assert "Missing required parameters" in data["message"]


def test_validate_lowercase_method_rejected(client, registry):
    r = client.get(
        "/oauth/validate",
        params={
            "clientId": registry["client_id"],
            "redirectUrl": REDIRECT,
            "code_challenge": "abc",
            "code_challenge_method": "s256",
        },
    )
    assert r.status_code == 400
    assert r.json()["error"] == "unsupported_challenge_method"


def test_validate_unknown_client(client, registry):
    r = client.get(
        "/oauth/validate",
        params={"clientId": "app_nope", "redirectUrl": REDIRECT, "code_challenge": "abc", "code_challenge_method": "S256"},
    )
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "unknown_client", "message": "Invalid client ID"}


@pytest.mark.parametrize("redirect", ["https://app.test/cb/", "http://app.test/cb", "https://app.test/CB"])
def test_validate_and_authorize_reject_non_identical_redirect(client, registry, redirect):
    _, challenge = generate_pkce()
    r1 = client.get(
        "/oauth/validate",
        params={
            "clientId": registry["client_id"],
            "redirectUrl": redirect,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        },
    )
    r2 = _authorize(client, registry, challenge, redirectUrl=redirect)
    for r in (r1, r2):
        assert r.status_code == 400
        assert r.json()["error"] == "redirect_mismatch"


# --- authorize ---


def test_authorize_returns_code_and_persists_record(client, registry):
    _, challenge = generate_pkce()
    before = datetime.now(timezone.utc)
    r = _authorize(client, registry, challenge)
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert set(data) == {"success", "code"}

    db = SessionLocal()
    try:
        row = db.query(AuthorizationCode).filter(AuthorizationCode.code == data["code"]).one()
        assert row.client_id == registry["client_id"]
        assert row.user_id == registry["user"].id
        assert row.code_challenge == challenge
        assert row.redirect_url == REDIRECT
        expires_at = row.expires_at.replace(tzinfo=timezone.utc)
        assert timedelta(minutes=9, seconds=59) <= expires_at - before <= timedelta(minutes=10, seconds=5)
    finally:
        db.close()


def test_authorize_bad_password_and_unknown_email_same_response(client, registry):
    _, challenge = generate_pkce()
    wrong = _authorize(client, registry, challenge, password="not-it")
    unknown = _authorize(client, registry, challenge, email="ghost@example.com")
    assert wrong.status_code == unknown.status_code == 401
    assert wrong.json() == unknown.json()
    assert wrong.json()["message"] == "Invalid credentials"


def test_authorize_without_grant_403(client, registry):
    _, challenge = generate_pkce()
    r = _authorize(client, registry, challenge, email="o@example.com", password="o-password")
    assert r.status_code == 403
    assert r.json()["error"] == "access_denied"


def test_authorize_missing_field_400(client, registry):
    _, challenge = generate_pkce()
    r = _authorize(client, registry, challenge, password=None)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_authorize_malformed_body_400(client, registry):
    r = client.post("/oauth/authorize", content=b"not json", headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    assert r.json()["success"] is False

    r = client.post("/oauth/authorize", json={"email": ["a"], "password": 1})
    assert r.status_code == 400


def _post_raw(client, path, body):
    # json.dumps escapes a lone surrogate as \ud800, which JSON parsers accept
    return client.post(path, content=json.dumps(body), headers={"Content-Type": "application/json"})


def test_authorize_lone_surrogate_challenge_400(client, registry):
    body = {
        "email": "u@example.com",
        "password": "u-password",
        "clientId": registry["client_id"],
        "redirectUrl": REDIRECT,
        "code_challenge": "\ud800",
        "code_challenge_method": "S256",
    }
    r = _post_raw(client, "/oauth/authorize", body)
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"
    assert registry["db"].query(AuthorizationCode).count() == 0


def test_token_lone_surrogate_verifier_400_and_code_survives(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]

    r = _post_raw(client, "/oauth/token", {"code": code, "code_verifier": "\ud800", "clientId": registry["client_id"]})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"
    assert _token(client, code, verifier, registry["client_id"]).status_code == 200



def test_authorize_records_audit_without_secrets(client, registry):
    _, challenge = generate_pkce()
    _authorize(client, registry, challenge, password="bad")
    code = _authorize(client, registry, challenge).json()["code"]

    db = SessionLocal()
    try:
        rows = db.query(AuditLog).order_by(AuditLog.id).all()
        events = [r.event_type for r in rows]
        assert EVENT_LOGIN_FAIL in events
        assert EVENT_CODE_ISSUED in events
        for row in rows:
            assert row.client_id == registry["client_id"]
            assert row.ip == "testclient"
            assert code not in str(vars(row))
    finally:
        db.close()


# --- token ---


def test_full_flow_viewer_role_then_reuse_fails(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]

    r = _token(client, code, verifier, registry["client_id"])
    assert r.status_code == 200
    data = r.json()
    assert data["success"] is True
    assert data["token_type"] == "Bearer"
    assert data["role"] == "viewer"
    assert data["user"] == {"id": str(registry["user"].id), "username": "u", "email": "u@example.com"}
    claims = decode_access_token(data["access_token"], registry["client_id"])
    assert claims["role"] == "viewer"
    assert claims["clientId"] == registry["client_id"]
    assert claims["applicationId"] == str(registry["app"].id)
    assert claims["exp"] - claims["iat"] == data["expires_in"]

    again = _token(client, code, verifier, registry["client_id"])
    assert again.status_code == 404
    assert again.json()["error"] == "invalid_grant"


def test_token_after_eleven_minutes_expired(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]

    app.dependency_overrides[get_clock] = lambda: (lambda: datetime.now(timezone.utc) + timedelta(minutes=11))
    r = _token(client, code, verifier, registry["client_id"])
    assert r.status_code == 400
    assert r.json()["error"] == "expired_grant"
    assert r.json()["message"] == "Authorization code has expired"

    # Gone even with the real clock and no sweep in between
    app.dependency_overrides.clear()
    r = _token(client, code, verifier, registry["client_id"])
    assert r.status_code == 404
    assert r.json()["error"] == "invalid_grant"


def test_token_wrong_verifier_then_correct(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]

    r = _token(client, code, verifier + "x", registry["client_id"])
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_verifier"
    assert _token(client, code, verifier, registry["client_id"]).status_code == 200


def test_token_client_mismatch(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]
    r = _token(client, code, verifier, "app_someone_else")
    assert r.status_code == 400
    assert r.json()["error"] == "client_mismatch"


def test_token_missing_fields(client, registry):
    r = client.post("/oauth/token", json={"code": "abc"})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"


def test_token_revoked_between_authorize_and_exchange(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]
    db = registry["db"]
    revoke_access(db, registry["user"], registry["app"])

    r = _token(client, code, verifier, registry["client_id"])
    assert r.status_code == 403
    db.expire_all()
    assert db.query(AuthorizationCode).filter(AuthorizationCode.code == code).first() is None


def test_token_issued_audited(client, registry):
    verifier, challenge = generate_pkce()
    code = _authorize(client, registry, challenge).json()["code"]
    _token(client, code, verifier, registry["client_id"])
    db = SessionLocal()
    try:
        assert db.query(AuditLog).filter(AuditLog.event_type == EVENT_TOKEN_ISSUED).count() == 1
    finally:
        db.close()


# --- authorize-with-token (portal session) ---


def test_authorize_with_session_token(client, registry):
    verifier, challenge = generate_pkce()
    session = mint_session_token(registry["user"].id)
    r = client.post(
        "/oauth/authorize-with-token",
        json={
            "clientId": registry["client_id"],
            "redirectUrl": REDIRECT,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        },
        headers={"Authorization": f"Bearer {session}"},
    )
    assert r.status_code == 200
    code = r.json()["code"]
    assert _token(client, code, verifier, registry["client_id"]).json()["role"] == "viewer"


def test_authorize_with_session_rejects_missing_or_foreign_tokens(client, registry):
    verifier, challenge = generate_pkce()
    body = {
        "clientId": registry["client_id"],
        "redirectUrl": REDIRECT,
        "code_challenge": challenge,
        "code_challenge_method": "S256",
    }
    assert client.post("/oauth/authorize-with-token", json=body).status_code == 401
    r = client.post("/oauth/authorize-with-token", json=body, headers={"Authorization": "Bearer garbage"})
    assert r.status_code == 401

    # An application access token is not a portal session
    code = _authorize(client, registry, challenge).json()["code"]
    access_token = _token(client, code, verifier, registry["client_id"]).json()["access_token"]
    r = client.post("/oauth/authorize-with-token", json=body, headers={"Authorization": f"Bearer {access_token}"})
    assert r.status_code == 401
    assert r.json()["message"] == "Invalid credentials"


def test_authorize_with_session_without_grant(client, registry):
    _, challenge = generate_pkce()
    session = mint_session_token(registry["outsider"].id)
    r = client.post(
        "/oauth/authorize-with-token",
        json={
            "clientId": registry["client_id"],
            "redirectUrl": REDIRECT,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
        },
        headers={"Authorization": f"Bearer {session}"},
    )
    assert r.status_code == 403


# --- rate limiting ---


def test_authorize_rate_limited(client, registry, monkeypatch):
    import portal_oauth.oauth as oauth_mod

    monkeypatch.setattr(oauth_mod, "RATE_LIMIT_AUTHORIZE_PER_MINUTE", 2)
    _, challenge = generate_pkce()
    for _ in range(2):
        _authorize(client, registry, challenge, password="wrong")
    r = _authorize(client, registry, challenge, password="wrong")
    assert r.status_code == 429
    assert "Retry-After" in r.headers
    assert r.json()["success"] is False


def test_token_rate_limited(client, registry, monkeypatch):
    import portal_oauth.oauth as oauth_mod

    monkeypatch.setattr(oauth_mod, "RATE_LIMIT_TOKEN_PER_MINUTE", 2)
    for _ in range(2):
        _token(client, "nope", "nope", registry["client_id"])
    r = _token(client, "nope", "nope", registry["client_id"])
    assert r.status_code == 429
    assert int(r.headers["Retry-After"]) >= 1
