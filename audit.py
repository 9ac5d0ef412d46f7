import logging
from typing import Any, Dict, List, Optional

import database
from schemas import AuditLogEntry

logger = logging.getLogger(__name__)

# Bookkeeping fields that would only add noise to a before/after diff
_SKIP_FIELDS = {"_id", "password_hash", "status_history", "updated_at"}


def snapshot(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    return {k: (str(v) if k.endswith("_id") and v is not None else v) for k, v in doc.items() if k not in _SKIP_FIELDS}


def record(
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> str:
    entry = AuditLogEntry(
        actor_id=str(actor_id),
        action=action,
        target_type=target_type,
        target_id=str(target_id),
        before=snapshot(before),
        after=snapshot(after),
        created_at=database.utcnow(),
    )
    entry_id = database.create_document("audit_log", entry)
    logger.info("[audit] %s %s %s/%s", actor_id, action, target_type, target_id)
    return entry_id


def list_entries(
    target_type: Optional[str] = None,
    target_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    limit: int = 50,
    skip: int = 0,
) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if target_type:
        query["target_type"] = target_type
    if target_id:
        query["target_id"] = target_id
    if actor_id:
        query["actor_id"] = actor_id
    cursor = database.collection("audit_log").find(query).sort("created_at", -1).skip(skip).limit(limit)
    return list(cursor)


def count_entries(target_type: Optional[str] = None, target_id: Optional[str] = None, actor_id: Optional[str] = None) -> int:
    query: Dict[str, Any] = {}
    if target_type:
        query["target_type"] = target_type
    if target_id:
        query["target_id"] = target_id
    if actor_id:
        query["actor_id"] = actor_id
    return database.collection("audit_log").count_documents(query)
