"""
Service request operations.

Lookups return None for unknown ids so routes can answer 404. Status changes
follow REQUEST_TRANSITIONS and are written conditionally on the status that
was read, so two admins racing on the same request cannot both win.
"""

import logging
import re
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import database
from errors import InvalidTransition, ValidationError
from schemas import PRIORITIES, PRIORITY_RANK, REQUEST_STATUSES, RitualStep, ServiceRequest, StatusChange

logger = logging.getLogger(__name__)

COLLECTION = "service_request"

REQUEST_TRANSITIONS = {
    "pending": {"in_progress", "on_hold", "completed", "cancelled"},
    "in_progress": {"on_hold", "completed", "cancelled"},
    "on_hold": {"pending", "in_progress", "completed", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def _col():
    return database.collection(COLLECTION)


def _find_and_set(request_id: str, updates: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(request_id)
    if oid is None:
        return None
    update = {"$set": {**updates, "updated_at": database.utcnow()}}
    if extra:
        update.update(extra)
    return _col().find_one_and_update({"_id": oid}, update, return_document=ReturnDocument.AFTER)


def create_service_request(
    user_id: str,
    service_name: str,
    service_type: str,
    description: str,
    client_notes: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
) -> Dict[str, Any]:
    if not service_name or not service_type or not description:
        raise ValidationError("Missing required fields: serviceName, serviceType, description")
    now = database.utcnow()
    request = ServiceRequest(
        user_id=str(user_id),
        service_name=service_name,
        service_type=service_type,
        description=description,
        client_notes=client_notes,
        payment_intent_id=payment_intent_id,
        requested_at=now,
        priority_rank=PRIORITY_RANK["medium"],
        status_history=[StatusChange(status="pending", updated_by="system", updated_at=now, notes="Request created")],
    )
    new_id = database.create_document(COLLECTION, request)
    logger.info("Service request %s created by %s", new_id, user_id)
    return get_service_request(new_id)


def get_service_request(request_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(request_id)
    if oid is None:
        return None
    return _col().find_one({"_id": oid})


def get_user_service_requests(user_id: str, limit: int = 50, skip: int = 0) -> List[Dict[str, Any]]:
    cursor = _col().find({"user_id": str(user_id)}).sort("requested_at", -1).skip(skip).limit(limit)
    return list(cursor)


def _admin_query(filters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    filters = filters or {}
    query: Dict[str, Any] = {}
    if filters.get("status"):
        query["status"] = filters["status"]
    if filters.get("priority"):
        query["priority"] = filters["priority"]
    if filters.get("assigned_to"):
        query["assigned_to"] = filters["assigned_to"]
    if filters.get("user_id"):
        query["user_id"] = filters["user_id"]
    if filters.get("service_type"):
        query["service_type"] = {"$regex": re.escape(filters["service_type"]), "$options": "i"}
    if filters.get("search"):
        pattern = {"$regex": re.escape(filters["search"]), "$options": "i"}
        query["$or"] = [
            {"description": pattern},
            {"client_notes": pattern},
            {"service_name": pattern},
        ]
    return query


def get_admin_service_requests(filters: Optional[Dict[str, Any]] = None, limit: int = 50, skip: int = 0) -> List[Dict[str, Any]]:
    cursor = (
        _col()
        .find(_admin_query(filters))
        .sort([("priority_rank", -1), ("requested_at", -1)])
        .skip(skip)
        .limit(limit)
    )
    return list(cursor)


def get_service_request_count(user_id: Optional[str] = None, filters: Optional[Dict[str, Any]] = None) -> int:
    query = _admin_query(filters)
    if user_id:
        query["user_id"] = str(user_id)
    return _col().count_documents(query)


def check_transition(current: str, target: str) -> None:
    if target not in REQUEST_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot change status from {current} to {target}")


def validate_admin_update(
    current: Dict[str, Any],
    status: Optional[str] = None,
    priority: Optional[str] = None,
    ritual_steps: Optional[List[Dict[str, Any]]] = None,
) -> None:
    """Check every field of an admin edit up front, so a bad field rejects the whole edit before anything is written."""
    if status:
        if status not in REQUEST_STATUSES:
            raise ValidationError(f"Invalid status. Must be one of: {', '.join(REQUEST_STATUSES)}")
        if status != current.get("status"):
            check_transition(current.get("status"), status)
    if priority and priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    if ritual_steps is not None:
        for step in ritual_steps:
            RitualStep(**step)


def update_service_request_status(
    request_id: str,
    status: str,
    actor_id: str,
    note: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    if status not in REQUEST_STATUSES:
        raise ValidationError(f"Invalid status. Must be one of: {', '.join(REQUEST_STATUSES)}")
    current = get_service_request(request_id)
    if current is None:
        return None
    if current.get("status") == status:
        return current
    check_transition(current.get("status"), status)

    now = database.utcnow()
    updates: Dict[str, Any] = {"status": status, "updated_at": now}
    if status == "in_progress":
        updates["started_at"] = now
    elif status == "completed":
        updates["completed_at"] = now
    entry = StatusChange(status=status, updated_by=str(actor_id), updated_at=now, notes=note).model_dump()

    updated = _col().find_one_and_update(
        {"_id": current["_id"], "status": current.get("status")},
        {"$set": updates, "$push": {"status_history": entry}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidTransition("Service request status changed concurrently, reload and retry")
    logger.info("Service request %s: %s -> %s by %s", request_id, current.get("status"), status, actor_id)
    audit.record(actor_id, "service_request.status", "service_request", request_id, current, updated)
    return updated


def assign_service_request(request_id: str, admin_id: str, actor_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    before = get_service_request(request_id)
    updated = _find_and_set(request_id, {"assigned_to": str(admin_id), "assigned_at": database.utcnow()})
    if updated is not None and actor_id:
        audit.record(actor_id, "service_request.assign", "service_request", request_id, before, updated)
    return updated


def update_request_priority(request_id: str, priority: str, actor_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    if priority not in PRIORITIES:
        raise ValidationError(f"Invalid priority. Must be one of: {', '.join(PRIORITIES)}")
    before = get_service_request(request_id)
    updated = _find_and_set(request_id, {"priority": priority, "priority_rank": PRIORITY_RANK[priority]})
    if updated is not None and actor_id:
        audit.record(actor_id, "service_request.priority", "service_request", request_id, before, updated)
    return updated


def add_admin_notes(request_id: str, notes: str, actor_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    before = get_service_request(request_id)
    updated = _find_and_set(request_id, {"admin_notes": notes})
    if updated is not None and actor_id:
        audit.record(actor_id, "service_request.notes", "service_request", request_id, before, updated)
    return updated


def update_ritual_steps(request_id: str, steps: List[Dict[str, Any]], actor_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    parsed = [RitualStep(**step).model_dump() for step in steps]
    before = get_service_request(request_id)
    updated = _find_and_set(request_id, {"ritual_steps": parsed})
    if updated is not None and actor_id:
        audit.record(actor_id, "service_request.ritual_steps", "service_request", request_id, before, updated)
    return updated


def append_step_photos(request_id: str, step_index: int, urls: List[str]) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(request_id)
    if oid is None:
        return None
    return _col().find_one_and_update(
        {"_id": oid, f"ritual_steps.{step_index}": {"$exists": True}},
        {
            "$push": {f"ritual_steps.{step_index}.photo_urls": {"$each": list(urls)}},
            "$set": {"updated_at": database.utcnow()},
        },
        return_document=ReturnDocument.AFTER,
    )


# Payment statuses a webhook may not overwrite, keyed by the incoming status.
PAYMENT_BLOCKED_BY = {
    "unpaid": {"paid", "failed", "refunded"},
    "failed": {"paid", "refunded"},
    "paid": {"refunded"},
    "refunded": set(),
}


def mark_payment(payment_intent_id: str, payment_status: str, amount_paid: Optional[int] = None) -> int:
    updates: Dict[str, Any] = {"payment_status": payment_status, "updated_at": database.utcnow()}
    if amount_paid is not None:
        updates["amount_paid"] = int(amount_paid)
    blocked = PAYMENT_BLOCKED_BY.get(payment_status, set())
    res = _col().update_many(
        {"payment_intent_id": payment_intent_id, "payment_status": {"$nin": list(blocked)}},
        {"$set": updates},
    )
    return res.modified_count


def link_payment_intent(request_id: str, payment_intent_id: str) -> Optional[Dict[str, Any]]:
    return _find_and_set(request_id, {"payment_intent_id": payment_intent_id})


def get_service_request_analytics(timeframe_hours: int = 30 * 24) -> Dict[str, Any]:
    cutoff = database.utcnow() - timedelta(hours=timeframe_hours)
    col = _col()

    total = col.count_documents({"requested_at": {"$gte": cutoff}})
    completed_docs = list(
        col.find({"status": "completed", "completed_at": {"$gte": cutoff}}, {"started_at": 1, "requested_at": 1, "completed_at": 1})
    )
    durations = []
    for doc in completed_docs:
        start = doc.get("started_at") or doc.get("requested_at")
        if start and doc.get("completed_at"):
            durations.append((doc["completed_at"] - start).total_seconds() * 1000)
    avg_ms = sum(durations) / len(durations) if durations else 0

    by_service = list(
        col.aggregate([
            {"$match": {"requested_at": {"$gte": cutoff}}},
            {"$group": {"_id": "$service_name", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ])
    )
    by_status = list(
        col.aggregate([
            {"$match": {"requested_at": {"$gte": cutoff}}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
    )

    completed = len(completed_docs)
    return {
        "total_requests": total,
        "completed_requests": completed,
        "completion_rate": round(completed / total * 100) if total else 0,
        "average_completion_time_ms": avg_ms,
        "average_completion_time_hours": round(avg_ms / (1000 * 60 * 60)),
        "requests_by_service": [{"service_name": r["_id"], "count": r["count"]} for r in by_service],
        "requests_by_status": {r["_id"]: r["count"] for r in by_status},
    }


def get_pending_requests_by_priority() -> Dict[str, int]:
    counts = {p: 0 for p in ("urgent", "high", "medium", "low")}
    for row in _col().aggregate([
        {"$match": {"status": "pending"}},
        {"$group": {"_id": "$priority", "count": {"$sum": 1}}},
    ]):
        if row["_id"] in counts:
            counts[row["_id"]] = row["count"]
    return counts
