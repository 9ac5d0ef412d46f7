import logging
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument

import database
from schemas import Payment

logger = logging.getLogger(__name__)

COLLECTION = "payment"


def _col():
    return database.collection(COLLECTION)


def record_payment_intent(
    payment_intent_id: str,
    user_id: str,
    amount: int,
    currency: str,
    service_id: Optional[str] = None,
    service_name: Optional[str] = None,
    service_request_id: Optional[str] = None,
    quote_id: Optional[str] = None,
) -> str:
    payment = Payment(
        user_id=str(user_id),
        payment_intent_id=payment_intent_id,
        service_id=service_id,
        service_name=service_name,
        service_request_id=service_request_id,
        quote_id=quote_id,
        amount=int(amount),
        currency=currency,
    )
    return database.create_document(COLLECTION, payment)


def get_by_payment_intent(payment_intent_id: str) -> Optional[Dict[str, Any]]:
    return _col().find_one({"payment_intent_id": payment_intent_id})


def get_user_payments(user_id: str, status: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"user_id": str(user_id)}
    if status:
        query["status"] = status
    return list(_col().find(query).sort("created_at", -1).limit(limit))


def apply_refund(payment_intent_id: str, refunded_total: int) -> Optional[Dict[str, Any]]:
    """Record the running refunded total for a payment. The stored total never goes down."""
    payment = _col().find_one_and_update(
        {"payment_intent_id": payment_intent_id},
        {"$max": {"refunded_amount": int(refunded_total)}},
        return_document=ReturnDocument.AFTER,
    )
    if payment is None:
        return None
    amount = payment.get("amount") or 0
    status = "refunded" if amount and payment["refunded_amount"] >= amount else "partially_refunded"
    return upsert_status(payment_intent_id, status)


def refundable_amount(payment: Dict[str, Any], already_refunded: int = 0) -> int:
    refunded = max(payment.get("refunded_amount") or 0, already_refunded)
    return max((payment.get("amount") or 0) - refunded, 0)


# A status may not overwrite any status listed here. Stripe redelivers and
# reorders events, so a late payment_intent.succeeded must not undo a refund.
BLOCKED_BY = {
    "pending": {"succeeded", "failed", "refunded", "partially_refunded"},
    "failed": {"succeeded", "refunded", "partially_refunded"},
    "succeeded": {"refunded", "partially_refunded"},
    "partially_refunded": {"refunded"},
    "refunded": set(),
}


def upsert_status(payment_intent_id: str, status: str, clear: Iterable[str] = (), **fields: Any) -> Dict[str, Any]:
    """Set the status of the record for a payment intent, creating it when the intent was made elsewhere.

    Fields passed as None are left alone; names in ``clear`` are removed. When
    the stored status is further along than ``status`` nothing is written and
    the stored record is returned.
    """
    now = database.utcnow()
    updates = {"status": status, "updated_at": now}
    updates.update({k: v for k, v in fields.items() if v is not None})
    update: Dict[str, Any] = {"$set": updates}
    if clear:
        update["$unset"] = {name: "" for name in clear}

    existing = get_by_payment_intent(payment_intent_id)
    if existing is not None:
        blocked = BLOCKED_BY.get(status, set())
        doc = _col().find_one_and_update(
            {"_id": existing["_id"], "status": {"$nin": list(blocked)}},
            update,
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.info("Payment %s stays %s, ignoring %s", payment_intent_id, existing.get("status"), status)
            return get_by_payment_intent(payment_intent_id)
        logger.info("Payment %s -> %s", payment_intent_id, status)
        return doc

    set_on_insert = {"created_at": now, "refunded_amount": 0, "amount": 0}
    for key in list(set_on_insert):
        if key in updates:
            set_on_insert.pop(key)
    update["$setOnInsert"] = set_on_insert
    doc = _col().find_one_and_update(
        {"payment_intent_id": payment_intent_id},
        update,
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Payment %s -> %s", payment_intent_id, status)
    return doc
