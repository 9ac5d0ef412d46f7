import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext

import config
import database
from errors import Forbidden, Unauthorized

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
security = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    user_id: str
    email: str
    name: Optional[str]
    role: str
    is_admin: bool


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        return False


def create_token(sub: str, role: str) -> str:
    payload = {
        "sub": sub,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=config.JWT_EXPIRE_MINUTES),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm="HS256")


def is_admin_user(user: dict) -> bool:
    if user.get("role") == "admin":
        return True
    email = (user.get("email") or "").lower()
    return bool(email) and email in config.ADMIN_EMAILS


def context_for(user: dict) -> AuthContext:
    return AuthContext(
        user_id=str(user["_id"]),
        email=user.get("email", ""),
        name=user.get("name"),
        role=user.get("role", "user"),
        is_admin=is_admin_user(user),
    )


def _resolve(creds: Optional[HTTPAuthorizationCredentials]) -> AuthContext:
    if creds is None or not creds.credentials:
        raise Unauthorized("Unauthorized")
    try:
        payload = jwt.decode(creds.credentials, config.JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise Unauthorized("Token expired")
    except jwt.InvalidTokenError:
        raise Unauthorized("Invalid token")

    oid = database.parse_object_id(payload.get("sub"))
    user = database.collection("user").find_one({"_id": oid}) if oid else None
    if not user:
        raise Unauthorized("Invalid token")
    if user.get("is_suspended"):
        raise Forbidden("Account suspended")
    return context_for(user)


def get_auth_context(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> AuthContext:
    return _resolve(creds)


def get_optional_auth(creds: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[AuthContext]:
    if creds is None:
        return None
    return _resolve(creds)


def require_admin(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.is_admin:
        logger.info("Admin access denied for user %s", ctx.user_id)
        raise Forbidden("Forbidden - Admin access required")
    return ctx


def ensure_owner_or_admin(ctx: AuthContext, owner_id: Optional[str]) -> None:
    if ctx.is_admin or (owner_id is not None and str(owner_id) == ctx.user_id):
        return
    raise Forbidden("Forbidden")
