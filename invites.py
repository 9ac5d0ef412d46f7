"""
Admin invites.

An invite is a single-use 64 hex char token that grants a role to whoever
accepts it with the invited email. ``pending`` moves once, to ``accepted``,
``revoked`` or ``expired``. Acceptance claims the token with a conditional
write before any user is touched.
"""

import logging
import re
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

import audit
import config
import database
import notifications
import users
from errors import NotFound, ValidationError
from schemas import ROLES, AdminInvite

logger = logging.getLogger(__name__)

COLLECTION = "admin_invite"
DEFAULT_EXPIRY_SECONDS = 7 * 24 * 60 * 60
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def _col():
    return database.collection(COLLECTION)


def generate_invite_token() -> str:
    return secrets.token_hex(32)


def invite_link(token: str) -> str:
    return f"{config.app_url()}/admin/invite/{token}"


def create_admin_invite(
    email: str,
    role: str,
    created_by: str,
    custom_message: Optional[str] = None,
    expires_in_seconds: int = DEFAULT_EXPIRY_SECONDS,
) -> Dict[str, Any]:
    if not email or not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")
    if role not in ROLES:
        raise ValidationError(f"Invalid role. Must be one of: {', '.join(ROLES)}")
    now = database.utcnow()
    invite = AdminInvite(
        email=email.strip().lower(),
        token=generate_invite_token(),
        role=role,
        created_by=str(created_by),
        custom_message=custom_message,
        expires_at=now + timedelta(seconds=expires_in_seconds),
    )
    invite_id = database.create_document(COLLECTION, invite)
    created = _col().find_one({"_id": database.parse_object_id(invite_id)})
    logger.info("Admin invite %s created for %s by %s", invite_id, invite.email, created_by)
    audit.record(created_by, "invite.create", COLLECTION, invite_id, None, {"email": invite.email, "role": role})
    expires_in_days = max(1, expires_in_seconds // (24 * 60 * 60))
    notifications.send_invite_email(invite.email, invite_link(invite.token), role, custom_message, expires_in_days)
    return created


def get_invite_by_token(token: str) -> Optional[Dict[str, Any]]:
    if not token:
        return None
    return _col().find_one({"token": token})


def _expire(invite: Dict[str, Any]) -> None:
    _col().update_one(
        {"_id": invite["_id"], "status": "pending"},
        {"$set": {"status": "expired", "updated_at": database.utcnow()}},
    )


def accept_admin_invite(token: str, email: str, name: str, password: str) -> Dict[str, Any]:
    """Consume the invite and create or promote its user. Returns {"user": ..., "invite": ...}."""
    if not email or not password or not name:
        raise ValidationError("Missing required fields: email, password, name")
    if len(password) < 8:
        raise ValidationError("Password must be at least 8 characters long")
    if not EMAIL_RE.match(email):
        raise ValidationError("Invalid email format")

    invite = get_invite_by_token(token)
    if invite is None:
        raise NotFound("Invalid or expired invite token")
    status = invite.get("status")
    if status == "accepted":
        raise ValidationError("Invite already accepted")
    if status == "revoked":
        raise ValidationError("Invite has been revoked")
    now = database.utcnow()
    if status == "expired" or invite["expires_at"] <= now:
        _expire(invite)
        raise ValidationError("Invite has expired")
    if invite["email"].lower() != email.strip().lower():
        raise ValidationError("Email does not match invite")

    claimed = _col().find_one_and_update(
        {"_id": invite["_id"], "status": "pending", "expires_at": {"$gt": now}},
        {"$set": {"status": "accepted", "accepted_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise ValidationError("Invite already accepted")

    user = users.get_user_by_email(email)
    if user is None:
        user = users.create_user(email, password, name=name, role=invite["role"])
    elif invite["role"] == "admin" and user.get("role") != "admin":
        user = users.set_user_role(str(user["_id"]), "admin")

    user_id = str(user["_id"])
    claimed = _col().find_one_and_update(
        {"_id": invite["_id"]},
        {"$set": {"accepted_by": user_id}},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Admin invite %s accepted by %s", invite["_id"], user_id)
    audit.record(user_id, "invite.accept", COLLECTION, str(invite["_id"]), invite, claimed)
    return {"user": user, "invite": claimed}


def revoke_admin_invite(token: str, actor_id: Optional[str] = None) -> Dict[str, Any]:
    now = database.utcnow()
    revoked = _col().find_one_and_update(
        {"token": token, "status": "pending"},
        {"$set": {"status": "revoked", "revoked_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if revoked is None:
        raise NotFound("Invite not found or already accepted/expired")
    logger.info("Admin invite %s revoked", revoked["_id"])
    if actor_id:
        audit.record(actor_id, "invite.revoke", COLLECTION, str(revoked["_id"]), None, {"status": "revoked"})
    return revoked


def list_invites(status: Optional[str] = None, limit: int = 50, skip: int = 0) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    return list(_col().find(query).sort("created_at", -1).skip(skip).limit(limit))


def get_invite_stats() -> Dict[str, int]:
    stats = {"pending": 0, "accepted": 0, "revoked": 0, "expired": 0}
    for row in _col().aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}]):
        if row["_id"] in stats:
            stats[row["_id"]] = row["count"]
    return stats


def public_invite(invite: Dict[str, Any]) -> Dict[str, Any]:
    """Invite as shown in admin listings; the token only appears inside the link."""
    out = database.to_public(invite)
    out.pop("token", None)
    out["inviteLink"] = invite_link(invite["token"])
    return out
