import re
from datetime import timedelta

from app.aba import auth
from app.aba.db import session_scope
from app.aba.models import User, utcnow

from conftest import login

GENERIC = "If an account with that email exists, a password reset link has been sent."


def _capture_emails(monkeypatch, module) -> list[dict]:
    sent = []

    def fake_send(config, to, subject, body):
        sent.append({"to": to, "subject": subject, "body": body})
        return True, ""

    monkeypatch.setattr(module, "send_email", fake_send)
    return sent


def _token_from(body: str) -> str:
    m = re.search(r"reset-password\?token=([0-9a-f]+)", body)
    assert m, body
    return m.group(1)


def test_change_password_requires_csrf_token(client):
    login(client, "staff@example.com", "staff-pw-123")
    r = client.post(
        "/api/auth/change-password",
        json={"current_password": "staff-pw-123", "new_password": "another-pw-1"},
    )
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]


def test_forgot_and_reset_password(client, app, monkeypatch):
    sent = _capture_emails(monkeypatch, auth)

    r = client.post("/api/auth/forgot-password", json={"email": "Staff@Example.com"})
    assert r.status_code == 200
    assert r.json["message"] == GENERIC
    assert len(sent) == 1
    assert sent[0]["to"] == "staff@example.com"
    token = _token_from(sent[0]["body"])

    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "staff@example.com").one()
        assert user.reset_token_hash and user.reset_token_hash != token

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "short"})
    assert r.status_code == 400
    r = client.post("/api/auth/reset-password", json={"token": token, "password": "recovered-pw-1"})
    assert r.status_code == 200

    # Tokens are single use
    r = client.post("/api/auth/reset-password", json={"token": token, "password": "recovered-pw-2"})
    assert r.status_code == 400
    assert r.json["error"] == "Invalid or expired reset token."

    login(client, "staff@example.com", "recovered-pw-1")


def test_forgot_password_does_not_reveal_unknown_accounts(client, monkeypatch):
    sent = _capture_emails(monkeypatch, auth)
    r = client.post("/api/auth/forgot-password", json={"email": "nobody@example.com"})
    assert r.status_code == 200
    assert r.json["message"] == GENERIC
    assert sent == []

    assert client.post("/api/auth/forgot-password", json={}).status_code == 400


def test_expired_reset_token_is_rejected(client, app, monkeypatch):
    sent = _capture_emails(monkeypatch, auth)
    client.post("/api/auth/forgot-password", json={"email": "staff@example.com"})
    token = _token_from(sent[0]["body"])

    with session_scope(app) as s:
        user = s.query(User).filter(User.email == "staff@example.com").one()
        user.reset_token_expires_at = utcnow() - timedelta(minutes=1)

    r = client.post("/api/auth/reset-password", json={"token": token, "password": "recovered-pw-1"})
    assert r.status_code == 400
    login(client, "staff@example.com", "staff-pw-123")


def test_set_new_password_only_when_required(client, app):
    headers = login(client, "staff@example.com", "staff-pw-123")
    r = client.post("/api/auth/set-new-password", json={"new_password": "another-pw-1"}, headers=headers)
    assert r.status_code == 400

    with session_scope(app) as s:
        s.query(User).filter(User.email == "staff@example.com").one().must_change_password = True

    assert client.get("/api/auth/me").json["must_change_password"] is True
    r = client.post("/api/auth/set-new-password", json={"new_password": "another-pw-1"})
    assert r.status_code == 400
    assert "CSRF" in r.json["error"]
    r = client.post("/api/auth/set-new-password", json={"new_password": "staff-pw-123"}, headers=headers)
    assert r.status_code == 400

    r = client.post("/api/auth/set-new-password", json={"new_password": "another-pw-1"}, headers=headers)
    assert r.status_code == 200
    assert r.json["must_change_password"] is False
