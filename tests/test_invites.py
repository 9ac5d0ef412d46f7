from datetime import timedelta

import pytest

import database
import invites
import notifications
import users
from errors import NotFound, ValidationError


def _invite(admin, email="apprentice@example.com", **kwargs):
    return invites.create_admin_invite(email, "admin", str(admin["_id"]), **kwargs)


def test_invite_token_and_link(admin):
    invite = _invite(admin)
    assert len(invite["token"]) == 64
    assert invite["status"] == "pending"
    assert invites.invite_link(invite["token"]) == f"https://spells.example.com/admin/invite/{invite['token']}"


def test_accept_creates_admin_user(admin):
    invite = _invite(admin)
    outcome = invites.accept_admin_invite(invite["token"], "apprentice@example.com", "Apprentice", "wand-and-staff")
    assert outcome["user"]["role"] == "admin"
    assert outcome["invite"]["status"] == "accepted"
    assert outcome["invite"]["accepted_by"] == str(outcome["user"]["_id"])


def test_accept_promotes_existing_user(admin, user):
    invite = _invite(admin, email="seeker@example.com")
    outcome = invites.accept_admin_invite(invite["token"], "seeker@example.com", "Seeker", "moonlight99")
    assert str(outcome["user"]["_id"]) == str(user["_id"])
    assert users.get_user_by_id(str(user["_id"]))["role"] == "admin"


def test_invite_accepted_once(admin):
    token = _invite(admin)["token"]
    invites.accept_admin_invite(token, "apprentice@example.com", "Apprentice", "wand-and-staff")
    with pytest.raises(ValidationError, match="already accepted"):
        invites.accept_admin_invite(token, "apprentice@example.com", "Apprentice", "wand-and-staff")


def test_email_must_match(admin):
    token = _invite(admin)["token"]
    with pytest.raises(ValidationError, match="Email does not match invite"):
        invites.accept_admin_invite(token, "intruder@example.com", "Intruder", "sneaky-pass")


def test_expired_invite(admin, db):
    invite = _invite(admin)
    db["admin_invite"].update_one({"_id": invite["_id"]}, {"$set": {"expires_at": database.utcnow() - timedelta(minutes=1)}})
    with pytest.raises(ValidationError, match="Invite has expired"):
        invites.accept_admin_invite(invite["token"], "apprentice@example.com", "Apprentice", "wand-and-staff")
    assert invites.get_invite_by_token(invite["token"])["status"] == "expired"


def test_revoked_invite(admin):
    token = _invite(admin)["token"]
    invites.revoke_admin_invite(token, str(admin["_id"]))
    with pytest.raises(ValidationError, match="revoked"):
        invites.accept_admin_invite(token, "apprentice@example.com", "Apprentice", "wand-and-staff")
    with pytest.raises(NotFound):
        invites.revoke_admin_invite(token)


def test_unknown_token():
    with pytest.raises(NotFound, match="Invalid or expired invite token"):
        invites.accept_admin_invite("f" * 64, "apprentice@example.com", "Apprentice", "wand-and-staff")


def test_stats(admin):
    _invite(admin)
    token = _invite(admin, email="second@example.com")["token"]
    invites.revoke_admin_invite(token)
    assert invites.get_invite_stats() == {"pending": 1, "accepted": 0, "revoked": 1, "expired": 0}


def test_api_invite_flow(client, admin_headers, user_headers):
    assert client.post("/api/admin/invites", json={"email": "apprentice@example.com"}, headers=user_headers).status_code == 403

    res = client.post(
        "/api/admin/invites",
        json={"email": "apprentice@example.com", "customMessage": "Welcome to the circle"},
        headers=admin_headers,
    )
    assert res.status_code == 201
    body = res.json()
    assert "token" not in body["invite"]
    token = body["inviteLink"].rsplit("/", 1)[-1]

    assert client.get(f"/api/admin/invites/{token}").json()["email"] == "apprentice@example.com"

    res = client.post(
        f"/api/admin/invites/{token}/accept",
        json={"email": "apprentice@example.com", "name": "Apprentice", "password": "wand-and-staff"},
    )
    assert res.status_code == 200
    assert res.json()["user"]["role"] == "admin"

    listing = client.get("/api/admin/invites", headers=admin_headers).json()
    assert listing["stats"]["accepted"] == 1

    login = client.post("/auth/login", json={"email": "apprentice@example.com", "password": "wand-and-staff"})
    assert login.status_code == 200


def test_api_accept_validates_body(client, admin):
    token = _invite(admin)["token"]
    res = client.post(f"/api/admin/invites/{token}/accept", json={"email": "apprentice@example.com"})
    assert res.status_code == 400
    assert res.json()["error"] == "Missing required fields: email, password, name"


def test_invite_email_uses_expiry_and_escapes_message(admin, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, text, html=None: sent.append((text, html)) or True)
    _invite(admin, custom_message="<script>alert('hex')</script>", expires_in_seconds=3 * 24 * 60 * 60)

    text, html = sent[0]
    assert "This link expires in 3 days." in text
    assert "This link expires in 3 days." in html
    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_api_invite_expiry_in_email(client, admin_headers, monkeypatch):
    sent = []
    monkeypatch.setattr(notifications, "send_email", lambda to, subject, text, html=None: sent.append(text) or True)
    res = client.post("/api/admin/invites", json={"email": "apprentice@example.com", "expiresInDays": 1}, headers=admin_headers)
    assert res.status_code == 201
    assert "This link expires in 1 day." in sent[0]
