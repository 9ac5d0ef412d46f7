import logging
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import database
from errors import NotFound, ValidationError
from schemas import FREQUENCIES, Insight

logger = logging.getLogger(__name__)

COLLECTION = "insight"
PREVIEW_LENGTH = 180

UPDATABLE_FIELDS = ("title", "content", "preview_text", "frequency", "tags", "locale")


def _col():
    return database.collection(COLLECTION)


def _preview(content: str) -> str:
    return (content or "")[:PREVIEW_LENGTH]


def create_insight(data: Dict[str, Any], created_by: Optional[str] = None) -> Dict[str, Any]:
    # active is only ever switched on through set_active_insight
    fields = {k: v for k, v in data.items() if k in UPDATABLE_FIELDS and v is not None}
    if not fields.get("title") or not fields.get("content"):
        raise ValidationError("Missing required fields: title, content")
    fields.setdefault("preview_text", _preview(fields["content"]))
    insight = Insight(**fields, active=False, created_by=created_by)
    insight_id = database.create_document(COLLECTION, insight)
    logger.info("Insight %s created", insight_id)
    created = get_insight(insight_id)
    if created_by:
        audit.record(created_by, "insight.create", COLLECTION, insight_id, None, created)
    return created


def get_insight(insight_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(insight_id)
    if oid is None:
        return None
    return _col().find_one({"_id": oid})


def update_insight(insight_id: str, updates: Dict[str, Any], actor_id: Optional[str] = None) -> Dict[str, Any]:
    before = get_insight(insight_id)
    if before is None:
        raise NotFound("Insight not found")
    clean = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS and v is not None}
    if "frequency" in clean and clean["frequency"] not in FREQUENCIES:
        raise ValidationError(f"Invalid frequency. Must be one of: {', '.join(FREQUENCIES)}")
    if "content" in clean and "preview_text" not in clean:
        clean["preview_text"] = _preview(clean["content"])
    clean["updated_at"] = database.utcnow()
    updated = _col().find_one_and_update({"_id": before["_id"]}, {"$set": clean}, return_document=ReturnDocument.AFTER)
    if actor_id:
        audit.record(actor_id, "insight.update", COLLECTION, insight_id, before, updated)
    return updated


def delete_insight(insight_id: str, actor_id: Optional[str] = None) -> bool:
    oid = database.parse_object_id(insight_id)
    if oid is None:
        return False
    before = _col().find_one({"_id": oid})
    res = _col().delete_one({"_id": oid})
    if res.deleted_count and actor_id:
        audit.record(actor_id, "insight.delete", COLLECTION, insight_id, before, None)
    return res.deleted_count > 0


def list_insights(
    frequency: Optional[str] = None,
    active: Optional[bool] = None,
    locale: Optional[str] = None,
    tags: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if frequency:
        query["frequency"] = frequency
    if active is not None:
        query["active"] = active
    if locale:
        query["locale"] = locale
    if tags:
        query["tags"] = {"$in": tags}
    return list(_col().find(query).sort("created_at", -1))


def get_active_insight(frequency: str = "daily") -> Optional[Dict[str, Any]]:
    return _col().find_one({"frequency": frequency, "active": True}, sort=[("updated_at", -1)])


def set_active_insight(insight_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    """Make this insight the single active one for its frequency.

    Two writes in sequence: siblings are switched off first, then the target on.
    A crash in between leaves no active insight for that frequency, never two.
    """
    target = get_insight(insight_id)
    if target is None:
        raise NotFound("Insight not found")
    now = database.utcnow()
    _col().update_many(
        {"frequency": target["frequency"], "active": True, "_id": {"$ne": target["_id"]}},
        {"$set": {"active": False, "updated_at": now}},
    )
    updated = _col().find_one_and_update(
        {"_id": target["_id"]},
        {"$set": {"active": True, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Insight %s is now the active %s insight", insight_id, target["frequency"])
    if actor_id:
        audit.record(actor_id, "insight.activate", COLLECTION, insight_id, target, updated)
    return updated


def deactivate_insight(insight_id: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    target = get_insight(insight_id)
    if target is None:
        raise NotFound("Insight not found")
    updated = _col().find_one_and_update(
        {"_id": target["_id"]},
        {"$set": {"active": False, "updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if actor_id and target.get("active"):
        audit.record(actor_id, "insight.deactivate", COLLECTION, insight_id, target, updated)
    return updated
