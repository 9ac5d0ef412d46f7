"""
Refund request workflow.

    pending  -> approved | denied
    approved -> processed | failed

processed, denied and failed are terminal. Every status write is conditional
on the status it was read in, so a refund cannot be reviewed or processed
twice. Only an approved request ever reaches the payment provider.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import database
import notifications
import payments
import transactions
from errors import InvalidTransition, NotFound, ValidationError
from schemas import REFUND_METHODS, REFUND_REASONS, USER_MESSAGE_MAX_LENGTH, RefundRequest, StatusChange

logger = logging.getLogger(__name__)

COLLECTION = "refund_request"

REFUND_TRANSITIONS = {
    "pending": {"approved", "denied"},
    "approved": {"processed", "failed"},
    "processed": set(),
    "denied": set(),
    "failed": set(),
}

OPEN_STATUSES = ("pending", "approved")


def _col():
    return database.collection(COLLECTION)


def _history(status: str, changed_by: str, notes: Optional[str] = None) -> Dict[str, Any]:
    return StatusChange(status=status, updated_by=str(changed_by), updated_at=database.utcnow(), notes=notes).model_dump()


def _notify(refund: Dict[str, Any]) -> None:
    oid = database.parse_object_id(refund.get("user_id"))
    user = database.collection("user").find_one({"_id": oid}) if oid else None
    if not user or not user.get("email"):
        return
    notifications.send_refund_status_email(
        user["email"],
        refund.get("status"),
        refund.get("service_name", ""),
        payments.format_payment_amount(refund.get("refunded_amount") or refund.get("amount") or 0),
        refund.get("admin_notes"),
    )


def check_transition(current: str, target: str) -> None:
    if target not in REFUND_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot change refund status from {current} to {target}")


def create_refund_request(
    user_id: str,
    payment_intent_id: str,
    amount: int,
    service_name: str,
    service_type: str,
    reason: str,
    user_message: Optional[str] = None,
    transaction_id: Optional[str] = None,
    currency: str = "usd",
) -> Dict[str, Any]:
    if not payment_intent_id or not reason:
        raise ValidationError("Missing required fields: paymentIntentId and reason")
    if reason not in REFUND_REASONS:
        raise ValidationError("Invalid refund reason provided")
    if user_message and len(user_message) > USER_MESSAGE_MAX_LENGTH:
        raise ValidationError(f"User message exceeds maximum length of {USER_MESSAGE_MAX_LENGTH} characters")
    if amount is None or int(amount) <= 0:
        raise ValidationError("Nothing to refund for this payment")

    refund = RefundRequest(
        user_id=str(user_id),
        payment_intent_id=payment_intent_id,
        transaction_id=transaction_id,
        amount=int(amount),
        currency=currency,
        service_name=service_name,
        service_type=service_type,
        reason=reason,
        user_message=user_message,
        requested_at=database.utcnow(),
        status_history=[_history("pending", user_id, "Refund requested")],
    )
    refund_id = database.create_document(COLLECTION, refund)
    logger.info("Refund request %s created for user %s (%s)", refund_id, user_id, payment_intent_id)
    created = get_refund_request(refund_id)
    _notify(created)
    return created


def find_open_request(user_id: str, payment_intent_id: str) -> Optional[Dict[str, Any]]:
    return _col().find_one({
        "user_id": str(user_id),
        "payment_intent_id": payment_intent_id,
        "status": {"$in": list(OPEN_STATUSES)},
    })


def refunded_total(payment_intent_id: str) -> int:
    """Cents already sent back through processed refund requests for a payment."""
    rows = _col().find({"payment_intent_id": payment_intent_id, "status": "processed"}, {"refunded_amount": 1})
    return sum(row.get("refunded_amount") or 0 for row in rows)


def get_refund_request(refund_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(refund_id)
    if oid is None:
        return None
    return _col().find_one({"_id": oid})


def get_user_refund_requests(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
    return list(_col().find({"user_id": str(user_id)}).sort("requested_at", -1).limit(limit))


def get_pending_refund_requests(limit: int = 50) -> List[Dict[str, Any]]:
    """Requests still waiting on an admin, oldest first."""
    query = {"status": {"$in": list(OPEN_STATUSES)}}
    return list(_col().find(query).sort("requested_at", 1).limit(limit))


def get_refund_requests_by_status(status: str, limit: int = 50) -> List[Dict[str, Any]]:
    return list(_col().find({"status": status}).sort("requested_at", -1).limit(limit))


def _conditional_update(refund: Dict[str, Any], target: str, fields: Dict[str, Any], changed_by: str, note: Optional[str]) -> Dict[str, Any]:
    updated = _col().find_one_and_update(
        {"_id": refund["_id"], "status": refund["status"]},
        {
            "$set": {**fields, "status": target, "updated_at": database.utcnow()},
            "$push": {"status_history": _history(target, changed_by, note)},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("Refund request was changed by another request, reload and retry")
    return updated


def update_refund_request(
    refund_id: str,
    admin_id: str,
    status: str,
    admin_notes: Optional[str] = None,
    refund_amount: Optional[int] = None,
    refund_method: Optional[str] = None,
) -> Dict[str, Any]:
    refund = get_refund_request(refund_id)
    if refund is None:
        raise NotFound("Refund request not found")
    if status not in REFUND_TRANSITIONS:
        raise ValidationError("Invalid status provided")
    check_transition(refund["status"], status)
    if refund_amount is not None and not (0 < int(refund_amount) <= refund["amount"]):
        raise ValidationError("Refund amount must be greater than 0 and cannot exceed original transaction amount")
    if refund_method is not None and refund_method not in REFUND_METHODS:
        raise ValidationError(f"Invalid refund method. Must be one of: {', '.join(REFUND_METHODS)}")

    fields: Dict[str, Any] = {
        "admin_id": str(admin_id),
        "reviewed_at": database.utcnow(),
        "refund_method": refund_method or refund.get("refund_method") or "original_payment_method",
    }
    if admin_notes is not None:
        fields["admin_notes"] = admin_notes
    if refund_amount is not None:
        fields["refund_amount"] = int(refund_amount)

    updated = _conditional_update(refund, status, fields, admin_id, admin_notes)
    logger.info("Refund request %s: %s -> %s by %s", refund_id, refund["status"], status, admin_id)
    audit.record(admin_id, f"refund.{status}", COLLECTION, refund_id, refund, updated)
    _notify(updated)
    return updated


def process_refund(
    refund_id: str,
    admin_id: str,
    refund_amount: Optional[int] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Send an approved refund to Stripe. Returns the updated request and the gateway result."""
    refund = get_refund_request(refund_id)
    if refund is None:
        raise NotFound("Refund request not found")
    if refund["status"] != "approved":
        raise InvalidTransition(
            f"Refund request must be in 'approved' status. Current status: {refund['status']}"
        )

    if refund_amount is None:
        refund_amount = refund.get("refund_amount") or refund["amount"]
    amount_to_refund = int(refund_amount)
    if amount_to_refund <= 0:
        raise ValidationError("Refund amount must be greater than 0")
    if amount_to_refund > refund["amount"]:
        raise ValidationError("Refund amount cannot exceed original transaction amount")

    already = refunded_total(refund["payment_intent_id"])
    payment = transactions.get_by_payment_intent(refund["payment_intent_id"])
    if payment is not None:
        if amount_to_refund > transactions.refundable_amount(payment, already):
            raise ValidationError("Refund amount exceeds the amount left to refund on this payment")
    elif amount_to_refund + already > refund["amount"]:
        raise ValidationError("Refund amount exceeds the amount left to refund on this payment")

    result = payments.refund_payment(
        refund["payment_intent_id"],
        amount_to_refund,
        reason or refund.get("reason"),
        idempotency_key=f"refund-request-{refund_id}",
    )

    if not result.success:
        failed = _conditional_update(
            refund,
            "failed",
            {"stripe_refund_error": result.error, "processed_at": database.utcnow()},
            admin_id,
            f"Stripe refund failed: {result.error}",
        )
        logger.error("Stripe refund failed for refund request %s: %s", refund_id, result.error)
        audit.record(admin_id, "refund.failed", COLLECTION, refund_id, refund, failed)
        _notify(failed)
        result.raise_for_error(500)

    processed = _conditional_update(
        refund,
        "processed",
        {
            "refund_intent_id": result.refund_id,
            "refunded_amount": result.amount if result.amount is not None else amount_to_refund,
            "stripe_refund_status": result.status,
            "processed_at": database.utcnow(),
        },
        admin_id,
        f"Stripe refund initiated: {result.refund_id}",
    )
    transactions.apply_refund(refund["payment_intent_id"], already + processed["refunded_amount"])
    logger.info("Stripe refund %s processed for refund request %s by admin %s", result.refund_id, refund_id, admin_id)
    audit.record(admin_id, "refund.processed", COLLECTION, refund_id, refund, processed)
    _notify(processed)
    return {"refund_request": processed, "result": result}


def update_refund_from_webhook(stripe_refund_id: str, status: str, error: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """Record Stripe's final word on a refund we already sent."""
    now = database.utcnow()
    fields: Dict[str, Any] = {"stripe_refund_status": status, "updated_at": now}
    if status == "succeeded":
        fields["completed_at"] = now
    if error:
        fields["stripe_refund_error"] = error
    return _col().find_one_and_update(
        {"refund_intent_id": stripe_refund_id},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )


def complete_for_payment_intent(payment_intent_id: str) -> int:
    now = database.utcnow()
    res = _col().update_many(
        {"payment_intent_id": payment_intent_id, "status": "processed", "completed_at": None},
        {"$set": {"completed_at": now, "stripe_refund_status": "succeeded", "updated_at": now}},
    )
    return res.modified_count


def get_refund_stats(start: datetime, end: datetime) -> Dict[str, int]:
    rows = list(_col().aggregate([
        {"$match": {"requested_at": {"$gte": start, "$lte": end}}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "amount": {"$sum": "$amount"}}},
    ]))
    by_status = {row["_id"]: row["count"] for row in rows}
    return {
        "total_requested": sum(by_status.values()),
        "total_pending": by_status.get("pending", 0),
        "total_approved": by_status.get("approved", 0),
        "total_denied": by_status.get("denied", 0),
        "total_processed": by_status.get("processed", 0),
        "total_failed": by_status.get("failed", 0),
        "total_amount": sum(row["amount"] for row in rows),
    }
