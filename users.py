import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import auth
import config
import database
from errors import Forbidden, NotFound, Unauthorized, ValidationError
from schemas import ROLES, User

logger = logging.getLogger(__name__)

COLLECTION = "user"

PROFILE_FIELDS = ("name", "phone", "image")


def _col():
    return database.collection(COLLECTION)


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(user_id)
    if oid is None:
        return None
    return _col().find_one({"_id": oid})


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    if not email:
        return None
    return _col().find_one({"email": email.strip().lower()})


def create_user(email: str, password: Optional[str], name: Optional[str] = None, role: str = "user", phone: Optional[str] = None) -> Dict[str, Any]:
    email = (email or "").strip().lower()
    if get_user_by_email(email):
        raise ValidationError("Email already registered")
    if password is not None and len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    user = User(
        email=email,
        password_hash=auth.hash_password(password) if password else None,
        name=name,
        phone=phone,
        role=role,
    )
    user_id = database.create_document(COLLECTION, user)
    logger.info("User %s created (%s)", user_id, role)
    return get_user_by_id(user_id)


def authenticate(email: str, password: str) -> Dict[str, Any]:
    user = get_user_by_email(email)
    if not user or not auth.verify_password(password, user.get("password_hash")):
        raise Unauthorized("Invalid email or password")
    if user.get("is_suspended"):
        raise Forbidden("Account suspended")
    touch_last_activity(str(user["_id"]))
    return user


def _set(user_id: str, updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    oid = database.parse_object_id(user_id)
    if oid is None:
        return None
    updates = {**updates, "updated_at": database.utcnow()}
    return _col().find_one_and_update({"_id": oid}, {"$set": updates}, return_document=ReturnDocument.AFTER)


def update_user_profile(user_id: str, updates: Dict[str, Any]) -> Dict[str, Any]:
    clean = {k: v for k, v in updates.items() if k in PROFILE_FIELDS and v is not None}
    if not clean:
        raise ValidationError("No valid fields to update")
    user = _set(user_id, clean)
    if user is None:
        raise NotFound("User not found")
    return user


def list_users(limit: int = 50, skip: int = 0, role: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if role:
        query["role"] = role
    return list(_col().find(query).sort("created_at", -1).skip(skip).limit(limit))


def count_users(role: Optional[str] = None) -> int:
    return _col().count_documents({"role": role} if role else {})


def search_users(query: str, limit: int = 20) -> List[Dict[str, Any]]:
    pattern = {"$regex": re.escape(query or ""), "$options": "i"}
    return list(_col().find({"$or": [{"email": pattern}, {"name": pattern}]}).limit(limit))


def suspend_user(user_id: str, reason: Optional[str], actor_id: str) -> Dict[str, Any]:
    before = get_user_by_id(user_id)
    if before is None:
        raise NotFound("User not found")
    if str(before["_id"]) == str(actor_id):
        raise ValidationError("You cannot suspend your own account")
    user = _set(user_id, {"is_suspended": True, "is_active": False, "suspension_reason": reason})
    logger.info("User %s suspended by %s", user_id, actor_id)
    audit.record(actor_id, "user.suspend", COLLECTION, user_id, before, user)
    return user


def reactivate_user(user_id: str, actor_id: str) -> Dict[str, Any]:
    before = get_user_by_id(user_id)
    if before is None:
        raise NotFound("User not found")
    user = _set(user_id, {"is_suspended": False, "is_active": True, "suspension_reason": None})
    logger.info("User %s reactivated by %s", user_id, actor_id)
    audit.record(actor_id, "user.reactivate", COLLECTION, user_id, before, user)
    return user


def count_admins() -> int:
    query: Dict[str, Any] = {"role": "admin"}
    if config.ADMIN_EMAILS:
        query = {"$or": [{"role": "admin"}, {"email": {"$in": config.ADMIN_EMAILS}}]}
    return _col().count_documents(query)


def set_user_role(user_id: str, role: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    if role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    before = get_user_by_id(user_id)
    if before is None:
        raise NotFound("User not found")
    if before.get("role") == "admin" and role != "admin" and count_admins() <= 1:
        raise ValidationError("Cannot demote the last admin")
    user = _set(user_id, {"role": role})
    logger.info("User %s role %s -> %s", user_id, before.get("role"), role)
    if actor_id:
        audit.record(actor_id, "user.role", COLLECTION, user_id, before, user)
    return user


def set_admin_notes(user_id: str, notes: str, actor_id: str) -> Dict[str, Any]:
    before = get_user_by_id(user_id)
    if before is None:
        raise NotFound("User not found")
    user = _set(user_id, {"admin_notes": notes})
    audit.record(actor_id, "user.notes", COLLECTION, user_id, before, user)
    return user


def touch_last_activity(user_id: str) -> None:
    _set(user_id, {"last_activity_at": database.utcnow()})
