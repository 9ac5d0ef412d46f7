import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import database
from errors import NotFound, ValidationError
from schemas import RequestTemplate

logger = logging.getLogger(__name__)

COLLECTION = "request_template"

UPDATABLE_FIELDS = (
    "name",
    "service_type",
    "service_name",
    "description",
    "default_ritual_steps",
    "estimated_price",
    "estimated_days",
    "priority",
    "category",
    "tags",
    "active",
)

# Most used first
_ORDER = [("usage_count", -1), ("created_at", -1)]


def _col():
    return database.collection(COLLECTION)


def create_request_template(data: Dict[str, Any], created_by: str) -> Dict[str, Any]:
    template = RequestTemplate(**{**data, "created_by": str(created_by), "usage_count": 0, "active": True})
    template_id = database.create_document(COLLECTION, template)
    logger.info("Request template %s created by %s", template_id, created_by)
    created = get_request_template(template_id)
    audit.record(created_by, "template.create", COLLECTION, template_id, None, created)
    return created


def get_request_template(template_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(template_id)
    if oid is None:
        return None
    return _col().find_one({"_id": oid})


def get_active_templates() -> List[Dict[str, Any]]:
    return list(_col().find({"active": True}).sort(_ORDER))


def get_templates_by_service_type(service_type: str) -> List[Dict[str, Any]]:
    return list(_col().find({"service_type": service_type, "active": True}).sort(_ORDER))


def get_templates_by_category(category: str) -> List[Dict[str, Any]]:
    return list(_col().find({"category": category, "active": True}).sort(_ORDER))


def search_templates(term: str) -> List[Dict[str, Any]]:
    pattern = {"$regex": re.escape(term or ""), "$options": "i"}
    query = {
        "active": True,
        "$or": [{"name": pattern}, {"category": pattern}, {"service_name": pattern}],
    }
    return list(_col().find(query).sort(_ORDER))


def update_request_template(template_id: str, updates: Dict[str, Any], actor_id: str) -> Dict[str, Any]:
    before = get_request_template(template_id)
    if before is None:
        raise NotFound("Template not found")
    clean = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS and v is not None}
    if not clean:
        raise ValidationError("No valid fields to update")
    # Re-validate the merged document so partial updates cannot break the schema
    merged = {k: v for k, v in {**before, **clean}.items() if k in RequestTemplate.model_fields}
    validated = RequestTemplate(**merged).model_dump()
    clean = {k: validated[k] for k in clean}
    clean["updated_at"] = database.utcnow()
    updated = _col().find_one_and_update({"_id": before["_id"]}, {"$set": clean}, return_document=ReturnDocument.AFTER)
    audit.record(actor_id, "template.update", COLLECTION, template_id, before, updated)
    return updated


def increment_template_usage(template_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(template_id)
    if oid is None:
        return None
    now = database.utcnow()
    return _col().find_one_and_update(
        {"_id": oid, "active": True},
        {"$inc": {"usage_count": 1}, "$set": {"last_used_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


def delete_request_template(template_id: str, actor_id: str) -> Dict[str, Any]:
    before = get_request_template(template_id)
    if before is None:
        raise NotFound("Template not found")
    updated = _col().find_one_and_update(
        {"_id": before["_id"]},
        {"$set": {"active": False, "updated_at": database.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Request template %s deactivated by %s", template_id, actor_id)
    audit.record(actor_id, "template.delete", COLLECTION, template_id, before, updated)
    return updated


def get_template_count(active_only: bool = True) -> int:
    return _col().count_documents({"active": True} if active_only else {})
