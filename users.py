import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

from auth import ChangePasswordRequest, Phone, change_password as change_own_password
from database import get_db, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import ACTIVE_ORDER_STATUSES, REVENUE_PAYMENT_STATUSES, Address, Preferences
from security import Principal, load_active_user, public_user, require_user, verify_password

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["users"])


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Phone = None
    avatar: Optional[str] = None


class AddressCreate(BaseModel):
    type: Literal["shipping", "billing", "both"] = "shipping"
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    company: Optional[str] = None
    address1: str = Field(..., min_length=1)
    address2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2)
    phone: Optional[str] = None
    is_default: bool = False


class AddressUpdate(BaseModel):
    type: Optional[Literal["shipping", "billing", "both"]] = None
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    company: Optional[str] = None
    address1: Optional[str] = Field(None, min_length=1)
    address2: Optional[str] = None
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    zip_code: Optional[str] = Field(None, min_length=1)
    country: Optional[str] = Field(None, min_length=2)
    phone: Optional[str] = None
    is_default: Optional[bool] = None


class PreferencesUpdate(BaseModel):
    language: Optional[str] = Field(None, min_length=2, max_length=10)
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    timezone: Optional[str] = None
    email_notifications: Optional[bool] = None
    sms_notifications: Optional[bool] = None
    marketing_emails: Optional[bool] = None
    theme: Optional[Literal["light", "dark", "system"]] = None


class DeleteAccountRequest(BaseModel):
    password: str = Field(..., min_length=1)


def _with_default(addresses: list, default_id: Optional[str]) -> list:
    """Exactly one default: ``default_id`` if given, else keep or promote the first."""
    if not addresses:
        return addresses
    if default_id is None:
        current = next((a["id"] for a in addresses if a.get("is_default")), None)
        default_id = current or addresses[0]["id"]
    return [{**a, "is_default": a["id"] == default_id} for a in addresses]


def _save_addresses(db: Database, user: dict, addresses: list) -> list:
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"addresses": addresses, "updated_at": utcnow()}})
    return addresses


def _find_address(user: dict, address_id: str) -> dict:
    address = next((a for a in user.get("addresses", []) if a.get("id") == address_id), None)
    if not address:
        raise NotFound("Address", address_id)
    return address


@router.get("/profile")
def get_profile(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    user = load_active_user(db, principal.id)
    data = public_user(user)
    data.update({
        "addresses": user.get("addresses", []),
        "preferences": user.get("preferences", {}),
        "lastLogin": user.get("last_login"),
        "createdAt": user.get("created_at"),
    })
    return {"success": True, "data": data}


@router.put("/profile")
def update_profile(
    payload: ProfileUpdate,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes:
        if changes["name"] is None or len(changes["name"].strip()) < 2:
            raise ValidationFailed("Name must be between 2 and 50 characters")
        changes["name"] = changes["name"].strip()
    if changes:
        changes["updated_at"] = utcnow()
        db["user"].update_one({"_id": user["_id"]}, {"$set": changes})
    updated = load_active_user(db, principal.id)
    return {"success": True, "message": "Profile updated successfully", "data": public_user(updated)}


@router.put("/change-password")
def change_password(
    payload: ChangePasswordRequest,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    return change_own_password(payload, principal, db)


@router.get("/addresses")
def list_addresses(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    user = load_active_user(db, principal.id)
    return {"success": True, "data": user.get("addresses", [])}


@router.post("/addresses", status_code=201)
def add_address(
    payload: AddressCreate,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    address = Address(**payload.model_dump()).model_dump()
    addresses = list(user.get("addresses", [])) + [address]
    default_id = address["id"] if payload.is_default or len(addresses) == 1 else None
    addresses = _save_addresses(db, user, _with_default(addresses, default_id))
    return {"success": True, "message": "Address added successfully", "data": addresses}


@router.put("/addresses/{address_id}")
def update_address(
    address_id: str,
    payload: AddressUpdate,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    _find_address(user, address_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"is_default"})
    addresses = [{**a, **changes} if a["id"] == address_id else a for a in user.get("addresses", [])]
    default_id = address_id if payload.is_default else None
    if payload.is_default is False and any(a["id"] == address_id and a.get("is_default") for a in addresses):
        # unsetting the default hands it to another address when there is one
        others = [a["id"] for a in addresses if a["id"] != address_id]
        default_id = others[0] if others else address_id
    addresses = _save_addresses(db, user, _with_default(addresses, default_id))
    return {"success": True, "message": "Address updated successfully", "data": addresses}


@router.delete("/addresses/{address_id}")
def delete_address(
    address_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    _find_address(user, address_id)
    remaining = [a for a in user.get("addresses", []) if a["id"] != address_id]
    addresses = _save_addresses(db, user, _with_default(remaining, None))
    return {"success": True, "message": "Address deleted successfully", "data": addresses}


@router.put("/addresses/{address_id}/default")
def set_default_address(
    address_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    _find_address(user, address_id)
    addresses = _save_addresses(db, user, _with_default(user.get("addresses", []), address_id))
    return {"success": True, "message": "Default address updated successfully", "data": addresses}


@router.get("/orders-summary")
def orders_summary(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    by_status = {
        row["_id"]: {"count": row["count"], "total_cents": row["total_cents"]}
        for row in db["order"].aggregate([
            {"$match": {"user_id": principal.id}},
            {"$group": {"_id": "$status", "count": {"$sum": 1}, "total_cents": {"$sum": "$total_cents"}}},
        ])
    }
    spent = 0
    for order in db["order"].find(
        {"user_id": principal.id, "payment_status": {"$in": list(REVENUE_PAYMENT_STATUSES)}},
        {"total_cents": 1, "refunded_cents": 1},
    ):
        spent += order["total_cents"] - order.get("refunded_cents", 0)
    return {
        "success": True,
        "data": {
            "totalOrders": sum(s["count"] for s in by_status.values()),
            "totalSpentCents": spent,
            "byStatus": by_status,
        },
    }


@router.put("/preferences")
def update_preferences(
    payload: PreferencesUpdate,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    merged = {**Preferences().model_dump(), **user.get("preferences", {}), **payload.model_dump(exclude_none=True)}
    preferences = Preferences(**merged).model_dump()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"preferences": preferences, "updated_at": utcnow()}})
    return {"success": True, "message": "Preferences updated successfully", "data": preferences}


@router.delete("/account")
def delete_account(
    payload: DeleteAccountRequest,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    user = load_active_user(db, principal.id)
    if not verify_password(payload.password, user.get("password_hash")):
        raise ValidationFailed("Password is incorrect", code="WRONG_PASSWORD")
    if db["order"].count_documents({"user_id": principal.id, "status": {"$in": list(ACTIVE_ORDER_STATUSES)}}):
        raise Conflict("Cannot delete account with active orders", code="ACTIVE_ORDERS")
    now = utcnow()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"is_active": False, "deleted_at": now, "updated_at": now}})
    logger.info("User %s deactivated their account", principal.id)
    return {"success": True, "message": "Account deleted successfully"}
