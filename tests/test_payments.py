import json
from decimal import Decimal

import pytest

import config
import payments
import pricing
import service_requests
import transactions
from conftest import sign_payload
from errors import ValidationError


@pytest.mark.parametrize(
    "amount,expected",
    [(10, 1000), (12.34, 1234), ("19.99", 1999), (Decimal("0.005"), 1), (0.1 + 0.2, 30)],
)
def test_convert_to_stripe_amount(amount, expected):
    assert payments.convert_to_stripe_amount(amount) == expected


def test_convert_rejects_garbage():
    with pytest.raises(ValidationError):
        payments.convert_to_stripe_amount("a lot")


def test_format_payment_amount():
    assert payments.format_payment_amount(1234) == "12.34"
    assert payments.format_payment_amount(5) == "0.05"


def test_create_intent_without_key(monkeypatch):
    monkeypatch.setattr(config, "STRIPE_SECRET_KEY", None)
    result = payments.create_payment_intent(1000, "usd", "Test", {})
    assert not result.success
    assert result.error == payments.NOT_CONFIGURED


def test_api_create_intent(client, user, user_headers, stripe_calls):
    res = client.post(
        "/api/payments/create-intent",
        json={"serviceId": "magic_rings", "serviceName": "Magic Rings", "amount": 49.99},
        headers=user_headers,
    )
    assert res.status_code == 200
    assert res.json() == {"success": True, "clientSecret": "pi_test_1_secret_abc", "paymentIntentId": "pi_test_1"}

    sent = stripe_calls["intents"][0]
    assert sent["amount"] == 4999
    assert sent["metadata"]["userId"] == str(user["_id"])
    assert sent["metadata"]["serviceId"] == "magic_rings"

    payment = transactions.get_by_payment_intent("pi_test_1")
    assert payment["status"] == "pending"
    assert payment["amount"] == 4999


def test_api_create_intent_rejects_zero(client, user_headers, stripe_calls):
    res = client.post(
        "/api/payments/create-intent",
        json={"serviceId": "magic_rings", "serviceName": "Magic Rings", "amount": 0},
        headers=user_headers,
    )
    assert res.status_code == 400
    assert res.json()["error"] == "Amount must be greater than 0"
    assert stripe_calls["intents"] == []


def test_api_create_intent_uses_accepted_quote(client, user, user_headers, stripe_calls):
    quote = pricing.create_price_quote(str(user["_id"]), "court_case", "Winning a Court Case", 300.0)
    body = {"serviceId": "court_case", "serviceName": "Winning a Court Case", "quoteId": str(quote["_id"])}

    res = client.post("/api/payments/create-intent", json=body, headers=user_headers)
    assert res.status_code == 400
    assert res.json()["error"] == "Quote must be accepted before payment"

    pricing.accept_price_quote(str(quote["_id"]))
    res = client.post("/api/payments/create-intent", json={**body, "amount": 1}, headers=user_headers)
    assert res.status_code == 200
    assert stripe_calls["intents"][0]["amount"] == 30000
    assert stripe_calls["intents"][0]["metadata"]["quoteId"] == str(quote["_id"])


def test_api_create_intent_links_service_request(client, user, user_headers, stripe_calls):
    req = service_requests.create_service_request(str(user["_id"]), "Magic Wallet", "magic_wallet", "Wealth")
    res = client.post(
        "/api/payments/create-intent",
        json={"serviceId": "magic_wallet", "serviceName": "Magic Wallet", "amount": 75, "serviceRequestId": str(req["_id"])},
        headers=user_headers,
    )
    assert res.status_code == 200
    assert service_requests.get_service_request(str(req["_id"]))["payment_intent_id"] == "pi_test_1"


def test_api_pending_payments(client, user, user_headers):
    transactions.record_payment_intent("pi_a", str(user["_id"]), 1500, "usd", service_name="Magic Rings")
    transactions.record_payment_intent("pi_b", str(user["_id"]), 2500, "usd", service_name="Magic Wallet")
    transactions.upsert_status("pi_b", "succeeded")
    body = client.get("/api/payments/pending", headers=user_headers).json()
    assert body["count"] == 1
    assert body["totalAmount"] == 1500
    assert body["totalAmountFormatted"] == "15.00"


def _post_event(client, event, signature=None):
    payload = json.dumps(event)
    headers = {"stripe-signature": signature or sign_payload(payload), "Content-Type": "application/json"}
    return client.post("/api/payments/webhook", content=payload, headers=headers)


def test_webhook_requires_signature_header(client):
    res = client.post("/api/payments/webhook", content="{}")
    assert res.status_code == 400
    assert res.json()["error"] == "Missing stripe-signature header"


def test_webhook_rejects_bad_signature(client):
    res = _post_event(client, {"type": "payment_intent.succeeded"}, signature="t=1,v1=deadbeef")
    assert res.status_code == 401
    assert res.json()["error"] == "Invalid webhook signature"


def test_webhook_payment_succeeded_marks_request_paid(client, user):
    req = service_requests.create_service_request(str(user["_id"]), "Magic Rings", "magic_rings", "Ring please")
    transactions.record_payment_intent("pi_ring", str(user["_id"]), 4999, "usd")
    event = {
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_ring",
                "amount": 4999,
                "amount_received": 4999,
                "currency": "usd",
                "metadata": {"userId": str(user["_id"]), "serviceRequestId": str(req["_id"])},
            }
        },
    }
    res = _post_event(client, event)
    assert res.status_code == 200
    assert res.json()["received"] is True

    assert transactions.get_by_payment_intent("pi_ring")["status"] == "succeeded"
    stored = service_requests.get_service_request(str(req["_id"]))
    assert stored["payment_status"] == "paid"
    assert stored["amount_paid"] == 4999

    # Stripe retries leave the same state
    assert _post_event(client, event).status_code == 200
    assert transactions.get_by_payment_intent("pi_ring")["status"] == "succeeded"


def test_webhook_payment_failed(client, user):
    event = {
        "type": "payment_intent.payment_failed",
        "data": {"object": {"id": "pi_bad", "currency": "usd", "last_payment_error": {"message": "Card declined"}, "metadata": {}}},
    }
    assert _post_event(client, event).status_code == 200
    payment = transactions.get_by_payment_intent("pi_bad")
    assert payment["status"] == "failed"
    assert payment["failure_reason"] == "Card declined"


def test_webhook_ignores_unknown_events(client):
    res = _post_event(client, {"type": "customer.created", "data": {"object": {}}})
    assert res.status_code == 200
    assert res.json() == {"received": True}


def test_cents_survive_format_and_convert():
    for cents in (0, 1, 99, 100, 1999, 123456789):
        assert payments.convert_to_stripe_amount(payments.format_payment_amount(cents)) == cents


def _intent_event(kind, intent_id, user, request_id=None, **extra):
    metadata = {"userId": str(user["_id"])}
    if request_id:
        metadata["serviceRequestId"] = request_id
    obj = {"id": intent_id, "amount": 5000, "amount_received": 5000, "currency": "usd", "metadata": metadata, **extra}
    return {"type": kind, "data": {"object": obj}}


def test_replayed_success_does_not_undo_refund(client, user, user_headers):
    req = service_requests.create_service_request(str(user["_id"]), "Magic Rings", "magic_rings", "Ring please")
    rid = str(req["_id"])
    transactions.record_payment_intent("pi_ring", str(user["_id"]), 5000, "usd")
    succeeded = _intent_event("payment_intent.succeeded", "pi_ring", user, rid)
    assert _post_event(client, succeeded).status_code == 200

    refunded = {
        "type": "charge.refunded",
        "data": {"object": {"payment_intent": "pi_ring", "amount": 5000, "amount_refunded": 5000, "refunded": True}},
    }
    assert _post_event(client, refunded).status_code == 200
    assert transactions.get_by_payment_intent("pi_ring")["status"] == "refunded"
    assert service_requests.get_service_request(rid)["payment_status"] == "refunded"

    assert _post_event(client, succeeded).status_code == 200
    payment = transactions.get_by_payment_intent("pi_ring")
    assert payment["status"] == "refunded"
    assert payment["refunded_amount"] == 5000
    assert service_requests.get_service_request(rid)["payment_status"] == "refunded"

    res = client.post(
        "/api/payments/refund-request",
        json={"paymentIntentId": "pi_ring", "reason": "other"},
        headers=user_headers,
    )
    assert res.status_code == 400


def test_late_failure_does_not_undo_success(client, user):
    req = service_requests.create_service_request(str(user["_id"]), "Magic Rings", "magic_rings", "Ring please")
    rid = str(req["_id"])
    assert _post_event(client, _intent_event("payment_intent.succeeded", "pi_late", user, rid)).status_code == 200
    failed = _intent_event("payment_intent.payment_failed", "pi_late", user, rid, last_payment_error={"message": "Card declined"})
    assert _post_event(client, failed).status_code == 200

    payment = transactions.get_by_payment_intent("pi_late")
    assert payment["status"] == "succeeded"
    assert payment.get("failure_reason") is None
    assert service_requests.get_service_request(rid)["payment_status"] == "paid"


def test_success_after_failed_attempt_clears_reason(client, user):
    failed = _intent_event("payment_intent.payment_failed", "pi_retry", user, last_payment_error={"message": "Card declined"})
    assert _post_event(client, failed).status_code == 200
    assert transactions.get_by_payment_intent("pi_retry")["failure_reason"] == "Card declined"

    assert _post_event(client, _intent_event("payment_intent.succeeded", "pi_retry", user)).status_code == 200
    payment = transactions.get_by_payment_intent("pi_retry")
    assert payment["status"] == "succeeded"
    assert payment.get("failure_reason") is None


def test_partial_refund_event_after_full_refund_is_ignored(client, user):
    transactions.record_payment_intent("pi_two", str(user["_id"]), 5000, "usd")
    transactions.upsert_status("pi_two", "succeeded")
    full = {"type": "charge.refunded", "data": {"object": {"payment_intent": "pi_two", "amount": 5000, "amount_refunded": 5000, "refunded": True}}}
    partial = {"type": "charge.refunded", "data": {"object": {"payment_intent": "pi_two", "amount": 5000, "amount_refunded": 2000}}}
    _post_event(client, full)
    _post_event(client, partial)
    payment = transactions.get_by_payment_intent("pi_two")
    assert payment["status"] == "refunded"
    assert payment["refunded_amount"] == 5000
