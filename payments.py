"""
Stripe gateway adapter.

Gateway calls never raise: they return a result object whose ``success`` flag
must be checked. ``raise_for_error()`` turns a failed result into a
GatewayError so callers above this module can stay exception based.
"""

import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

import stripe

import config
from errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Payment provider not configured"

# Stripe only accepts these refund reasons
REFUND_REASON_MAP = {
    "duplicate_charge": "duplicate",
    "duplicate": "duplicate",
    "fraudulent": "fraudulent",
}


@dataclass
class PaymentIntentResult:
    success: bool
    client_secret: Optional[str] = None
    payment_intent_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    def raise_for_error(self, status_code: int = 400) -> "PaymentIntentResult":
        if not self.success:
            raise GatewayError(self.error or "Payment failed", status_code, self.error_code)
        return self


@dataclass
class RefundResult:
    success: bool
    refund_id: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None

    def raise_for_error(self, status_code: int = 500) -> "RefundResult":
        if not self.success:
            raise GatewayError(self.error or "Refund failed", status_code)
        return self


def _configured() -> bool:
    if not config.STRIPE_SECRET_KEY:
        return False
    stripe.api_key = config.STRIPE_SECRET_KEY
    return True


def _plain(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


def convert_to_stripe_amount(amount: Union[int, float, str, Decimal]) -> int:
    """Decimal major units (12.34, "12.34") -> integer cents (1234), rounding half up."""
    try:
        value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError("Invalid amount")
    return int(value * 100)


def format_payment_amount(cents: int) -> str:
    """Integer cents -> "12.34"."""
    return f"{(Decimal(int(cents)) / Decimal(100)):.2f}"


def create_payment_intent(
    amount_cents: int,
    currency: str,
    description: Optional[str],
    metadata: Optional[Dict[str, Any]],
    receipt_email: Optional[str] = None,
) -> PaymentIntentResult:
    if not _configured():
        return PaymentIntentResult(success=False, error=NOT_CONFIGURED, error_code="not_configured")
    try:
        kwargs = dict(
            amount=int(amount_cents),
            currency=(currency or config.DEFAULT_CURRENCY).lower(),
            description=description,
            metadata={k: str(v) for k, v in (metadata or {}).items() if v is not None},
            automatic_payment_methods={"enabled": True},
        )
        if receipt_email:
            kwargs["receipt_email"] = receipt_email
        intent = stripe.PaymentIntent.create(**kwargs)
        logger.info("Created payment intent %s for %s cents", intent.id, amount_cents)
        return PaymentIntentResult(
            success=True,
            client_secret=intent.client_secret,
            payment_intent_id=intent.id,
        )
    except stripe.StripeError as e:
        logger.error("Stripe error creating payment intent: %s", e)
        return PaymentIntentResult(
            success=False,
            error=getattr(e, "user_message", None) or str(e) or "Payment failed",
            error_code=getattr(e, "code", None),
        )


def refund_payment(
    payment_intent_id: str,
    amount: Optional[int] = None,
    reason: Optional[str] = None,
    idempotency_key: Optional[str] = None,
) -> RefundResult:
    if not _configured():
        return RefundResult(success=False, error=NOT_CONFIGURED)
    try:
        kwargs: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount is not None:
            kwargs["amount"] = int(amount)
        kwargs["reason"] = REFUND_REASON_MAP.get(reason or "", "requested_by_customer")
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        refund = stripe.Refund.create(**kwargs)
        logger.info("Created refund %s for payment intent %s", refund.id, payment_intent_id)
        return RefundResult(
            success=True,
            refund_id=refund.id,
            amount=refund.amount,
            currency=refund.currency,
            status=refund.status,
        )
    except stripe.StripeError as e:
        logger.error("Stripe error refunding %s: %s", payment_intent_id, e)
        return RefundResult(success=False, error=getattr(e, "user_message", None) or str(e) or "Refund failed")


def get_payment_intent(payment_intent_id: str) -> Optional[Dict[str, Any]]:
    if not _configured():
        return None
    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as e:
        logger.error("Stripe error retrieving payment intent %s: %s", payment_intent_id, e)
        return None
    return {
        "id": intent.id,
        "amount": intent.amount,
        "currency": intent.currency,
        "status": intent.status,
        "description": getattr(intent, "description", None),
        "metadata": _plain(getattr(intent, "metadata", None)),
    }


def verify_webhook_signature(raw_body: bytes, signature: str) -> Optional[Dict[str, Any]]:
    """Return the parsed event when the signature checks out, otherwise None."""
    secret = config.STRIPE_WEBHOOK_SECRET
    if not secret:
        logger.error("Webhook secret not configured")
        return None
    try:
        payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        stripe.WebhookSignature.verify_header(payload, signature, secret, stripe.Webhook.DEFAULT_TOLERANCE)
        return json.loads(payload)
    except stripe.SignatureVerificationError:
        logger.warning("Invalid webhook signature")
        return None
    except ValueError as e:
        logger.warning("Malformed webhook payload: %s", e)
        return None
