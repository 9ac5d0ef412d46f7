"""
Stripe webhook event handling.

Handlers only run after the signature was verified. They are upserts keyed on
the payment intent id, so Stripe retrying an event leaves the same state.
A payment only moves forward: a late or replayed event never takes a refunded
payment back to succeeded, or a succeeded one back to failed.
"""

import logging
from typing import Any, Callable, Dict

import database
import refunds
import service_requests
import transactions

logger = logging.getLogger(__name__)


def _metadata(obj: Dict[str, Any]) -> Dict[str, Any]:
    return obj.get("metadata") or {}


def handle_payment_succeeded(intent: Dict[str, Any]) -> Dict[str, Any]:
    intent_id = intent["id"]
    meta = _metadata(intent)
    amount = intent.get("amount_received") or intent.get("amount") or 0
    transactions.upsert_status(
        intent_id,
        "succeeded",
        amount=int(amount),
        currency=intent.get("currency"),
        user_id=meta.get("userId"),
        service_id=meta.get("serviceId"),
        service_name=meta.get("serviceName"),
        paid_at=database.utcnow(),
        clear=("failure_reason",),
    )
    request_id = meta.get("serviceRequestId")
    if request_id:
        service_requests.link_payment_intent(request_id, intent_id)
    updated = service_requests.mark_payment(intent_id, "paid", amount_paid=int(amount))
    logger.info("Payment succeeded: %s (%s cents), %d service request(s) marked paid", intent_id, amount, updated)
    return {"received": True, "message": "Payment processed successfully"}


def handle_payment_failed(intent: Dict[str, Any]) -> Dict[str, Any]:
    intent_id = intent["id"]
    meta = _metadata(intent)
    reason = (intent.get("last_payment_error") or {}).get("message")
    transactions.upsert_status(
        intent_id,
        "failed",
        currency=intent.get("currency"),
        user_id=meta.get("userId"),
        service_id=meta.get("serviceId"),
        service_name=meta.get("serviceName"),
        failure_reason=reason,
    )
    request_id = meta.get("serviceRequestId")
    if request_id:
        service_requests.link_payment_intent(request_id, intent_id)
    service_requests.mark_payment(intent_id, "failed")
    logger.error("Payment failed: %s (%s)", intent_id, reason)
    return {"received": True, "message": "Payment failure recorded"}


def handle_charge_refunded(charge: Dict[str, Any]) -> Dict[str, Any]:
    intent_id = charge.get("payment_intent")
    if not intent_id:
        return {"received": True}
    amount = int(charge.get("amount") or 0)
    refunded = int(charge.get("amount_refunded") or 0)
    payment = transactions.apply_refund(intent_id, refunded)
    if payment is None:
        status = "refunded" if charge.get("refunded") or (amount and refunded >= amount) else "partially_refunded"
        payment = transactions.upsert_status(intent_id, status, amount=amount or None, refunded_amount=refunded)
    completed = refunds.complete_for_payment_intent(intent_id)
    for refund in ((charge.get("refunds") or {}).get("data") or []):
        refunds.update_refund_from_webhook(refund.get("id"), refund.get("status"), refund.get("failure_reason"))
    if payment.get("status") == "refunded":
        service_requests.mark_payment(intent_id, "refunded")
    logger.info("Charge refunded for %s: %s of %s cents, %d refund request(s) completed", intent_id, refunded, amount, completed)
    return {"received": True, "message": "Refund recorded"}


HANDLERS: Dict[str, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    "payment_intent.succeeded": handle_payment_succeeded,
    "payment_intent.payment_failed": handle_payment_failed,
    "charge.refunded": handle_charge_refunded,
}


def dispatch(event: Dict[str, Any]) -> Dict[str, Any]:
    handler = HANDLERS.get(event.get("type"))
    if handler is None:
        logger.debug("Ignoring webhook event type %s", event.get("type"))
        return {"received": True}
    return handler((event.get("data") or {}).get("object") or {})
