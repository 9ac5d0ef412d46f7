import hashlib
import hmac
import time
from types import SimpleNamespace

import mongomock
import pytest
import stripe
from fastapi.testclient import TestClient

import auth
import config
import database
import users
from main import app

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def db(monkeypatch, tmp_path):
    mock_db = mongomock.MongoClient()["spell_caster_test"]
    database.init_db(mock_db)
    monkeypatch.setattr(config, "SMTP_HOST", None)
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(config, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(config, "ADMIN_EMAILS", [])
    monkeypatch.setattr(config, "APP_URL", "https://spells.example.com")
    monkeypatch.setattr(config, "UPLOAD_DIR", str(tmp_path / "uploads"))
    yield mock_db
    database.init_db(None)


@pytest.fixture
def client():
    return TestClient(app)


def _headers(user):
    return {"Authorization": f"Bearer {auth.create_token(str(user['_id']), user['role'])}"}


@pytest.fixture
def user():
    return users.create_user("seeker@example.com", "moonlight99", name="Seeker")


@pytest.fixture
def other_user():
    return users.create_user("wanderer@example.com", "starlight99", name="Wanderer")


@pytest.fixture
def admin():
    return users.create_user("healer@example.com", "candles-and-sage", name="Healer", role="admin")


@pytest.fixture
def user_headers(user):
    return _headers(user)


@pytest.fixture
def other_headers(other_user):
    return _headers(other_user)


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)


@pytest.fixture
def stripe_calls(monkeypatch):
    """Record Stripe API calls and answer them with canned objects."""
    calls = {"intents": [], "refunds": []}

    def create_intent(**kwargs):
        calls["intents"].append(kwargs)
        n = len(calls["intents"])
        return SimpleNamespace(id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_abc")

    def create_refund(**kwargs):
        calls["refunds"].append(kwargs)
        return SimpleNamespace(id="re_test_1", amount=kwargs.get("amount"), currency="usd", status="succeeded")

    monkeypatch.setattr(stripe.PaymentIntent, "create", create_intent)
    monkeypatch.setattr(stripe.Refund, "create", create_refund)
    return calls


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"
