import logging
import re
from datetime import timedelta
from typing import Annotated, Optional

from fastapi import APIRouter, Depends
from pydantic import AfterValidator, BaseModel, EmailStr, Field, field_validator
from pymongo.database import Database

from config import settings
from database import create_document, get_db, utcnow
from errors import AccountLocked, AuthError, Conflict, NotFound, ValidationFailed
from notifications import send_password_reset_email, send_verification_email
from schemas import User
from security import (
    Principal,
    decode_token,
    hash_password,
    hash_token,
    issue_one_time_token,
    load_active_user,
    public_user,
    require_user,
    token_pair,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

PHONE_RE = re.compile(r"^\+?[\d\s\-()]+$")
EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(minutes=10)


def check_password_strength(value: str) -> str:
    if not (re.search(r"[a-z]", value) and re.search(r"[A-Z]", value) and re.search(r"\d", value)):
        raise ValueError("Password must contain at least one uppercase letter, one lowercase letter, and one number")
    return value


def check_phone(value: Optional[str]) -> Optional[str]:
    if value is not None and not PHONE_RE.match(value):
        raise ValueError("Please provide a valid phone number")
    return value


Password = Annotated[str, Field(min_length=6, max_length=72), AfterValidator(check_password_strength)]
Phone = Annotated[Optional[str], AfterValidator(check_phone)]


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: Password
    phone: Phone = None

    @field_validator("name")
    @classmethod
    def _strip_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Name must be between 2 and 50 characters")
        return v


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: Password


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: Password


def _token_response(user: dict) -> dict:
    return {**token_pair(str(user["_id"])), "user": public_user(user)}


@router.post("/register", status_code=201)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise Conflict("User already exists with this email", code="EMAIL_TAKEN")

    raw_token, token_hash = issue_one_time_token()
    user = User(
        name=payload.name,
        email=email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
        email_verification_token=token_hash,
        email_verification_expire=utcnow() + EMAIL_VERIFICATION_TTL,
    )
    user_id = create_document("user", user)
    created = load_active_user(db, user_id)
    logger.info("Registered user %s", user_id)

    if settings.enable_email_verification:
        send_verification_email(created, raw_token)

    return {"success": True, "data": _token_response(created)}


@router.post("/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not user.get("is_active", True):
        raise AuthError("Invalid credentials", code="INVALID_CREDENTIALS")

    now = utcnow()
    lock_until = user.get("lock_until")
    if lock_until and lock_until > now:
        raise AccountLocked("Account is temporarily locked due to too many failed login attempts")

    if not verify_password(payload.password, user.get("password_hash")):
        attempts = user.get("login_attempts", 0) + 1
        update = {"login_attempts": attempts}
        if attempts >= settings.max_login_attempts:
            update = {"login_attempts": 0, "lock_until": now + timedelta(minutes=settings.lock_minutes)}
            logger.warning("Locking account %s after %d failed logins", user["_id"], attempts)
        db["user"].update_one({"_id": user["_id"]}, {"$set": update})
        raise AuthError("Invalid credentials", code="INVALID_CREDENTIALS")

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"login_attempts": 0, "lock_until": None, "last_login": now, "updated_at": now}},
    )
    return {"success": True, "data": _token_response(user)}


@router.post("/logout")
def logout(principal: Principal = Depends(require_user)):
    # Tokens are stateless; the client drops them.
    return {"success": True, "message": "Logged out successfully"}


@router.get("/me")
def me(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    user = load_active_user(db, principal.id)
    data = public_user(user)
    data.update({
        "addresses": user.get("addresses", []),
        "preferences": user.get("preferences", {}),
        "createdAt": user.get("created_at"),
    })
    return {"success": True, "data": data}


@router.post("/refresh")
def refresh(payload: RefreshRequest, db: Database = Depends(get_db)):
    user_id = decode_token(payload.refresh_token, token_type="refresh")
    user = load_active_user(db, user_id)
    return {"success": True, "data": token_pair(str(user["_id"]))}


@router.post("/verify-email")
def verify_email(payload: TokenRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email_verification_token": hash_token(payload.token)})
    expires = user.get("email_verification_expire") if user else None
    if not user or not expires or expires < utcnow():
        raise ValidationFailed("Invalid or expired verification token", code="INVALID_TOKEN")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "is_email_verified": True,
            "email_verification_token": None,
            "email_verification_expire": None,
            "updated_at": utcnow(),
        }},
    )
    return {"success": True, "message": "Email verified successfully"}


@router.post("/resend-email-verification")
def resend_email_verification(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    user = load_active_user(db, principal.id)
    if user.get("is_email_verified"):
        raise Conflict("Email is already verified")
    raw_token, token_hash = issue_one_time_token()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"email_verification_token": token_hash, "email_verification_expire": utcnow() + EMAIL_VERIFICATION_TTL}},
    )
    send_verification_email(user, raw_token)
    return {"success": True, "message": "Email verification sent"}


@router.post("/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower(), "is_active": True})
    if not user:
        raise NotFound("User")
    raw_token, token_hash = issue_one_time_token()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"reset_password_token": token_hash, "reset_password_expire": utcnow() + PASSWORD_RESET_TTL}},
    )
    send_password_reset_email(user, raw_token)
    return {"success": True, "message": "Password reset email sent"}


@router.post("/reset-password")
def reset_password(payload: ResetPasswordRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"reset_password_token": hash_token(payload.token)})
    expires = user.get("reset_password_expire") if user else None
    if not user or not expires or expires < utcnow():
        raise ValidationFailed("Invalid or expired reset token", code="INVALID_TOKEN")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "password_hash": hash_password(payload.password),
            "reset_password_token": None,
            "reset_password_expire": None,
            "login_attempts": 0,
            "lock_until": None,
            "updated_at": utcnow(),
        }},
    )
    return {"success": True, "message": "Password reset successful"}


@router.post("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    if not verify_password(payload.current_password, user.get("password_hash")):
        raise ValidationFailed("Current password is incorrect", code="WRONG_PASSWORD")
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    return {"success": True, "message": "Password changed successfully"}
