"""
Authentication helpers

Password hashing (bcrypt), JWT access/refresh tokens, one-time tokens for
email verification and password reset, and the FastAPI dependencies that
turn a bearer token into an explicit ``Principal``.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from pymongo.database import Database

from config import settings
from database import get_db, to_object_id
from errors import AuthError, Forbidden

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


class Principal(BaseModel):
    """The authenticated caller of a request."""

    id: str
    email: str
    name: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.bcrypt_rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _encode(user_id: str, token_type: str, secret: str, ttl: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "type": token_type, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def create_access_token(user_id: str) -> str:
    return _encode(user_id, "access", settings.jwt_secret, timedelta(minutes=settings.jwt_expire_minutes))


def create_refresh_token(user_id: str) -> str:
    return _encode(
        user_id, "refresh", settings.jwt_refresh_secret, timedelta(days=settings.jwt_refresh_expire_days)
    )


def decode_token(token: str, token_type: str = "access") -> str:
    """Return the user id carried by a valid token of the given type."""
    secret = settings.jwt_secret if token_type == "access" else settings.jwt_refresh_secret
    try:
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.InvalidTokenError:
        raise AuthError("Not authorized, token failed", code="INVALID_TOKEN")
    if payload.get("type") != token_type or not payload.get("sub"):
        raise AuthError("Not authorized, token failed", code="INVALID_TOKEN")
    return payload["sub"]


def token_pair(user_id: str) -> dict:
    return {"token": create_access_token(user_id), "refreshToken": create_refresh_token(user_id)}


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def issue_one_time_token() -> Tuple[str, str]:
    """Return (raw token for the user, sha256 digest for storage)."""
    raw = secrets.token_hex(20)
    return raw, hash_token(raw)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "phone": user.get("phone"),
        "role": user.get("role", "user"),
        "isEmailVerified": user.get("is_email_verified", False),
        "isPhoneVerified": user.get("is_phone_verified", False),
        "avatar": user.get("avatar"),
    }


def load_active_user(db: Database, user_id: str) -> dict:
    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user or not user.get("is_active", True):
        raise AuthError("User not found", code="USER_NOT_FOUND")
    return user


def require_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("Not authorized, no token", code="NO_TOKEN")
    user_id = decode_token(credentials.credentials)
    user = load_active_user(db, user_id)
    return Principal(id=str(user["_id"]), email=user["email"], name=user["name"], role=user.get("role", "user"))


def optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Database = Depends(get_db),
) -> Optional[Principal]:
    """Like ``require_user`` for public routes: None when no token is sent."""
    if credentials is None:
        return None
    return require_user(credentials, db)


def require_admin(principal: Principal = Depends(require_user)) -> Principal:
    if not principal.is_admin:
        raise Forbidden("Not authorized as admin")
    return principal


def ensure_owner_or_admin(principal: Principal, owner_id: str) -> None:
    if principal.is_admin or principal.id == owner_id:
        return
    raise Forbidden("Access denied")
