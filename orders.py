"""
Order placement and lifecycle

Stock moves and order writes are paired: stock is taken with one
conditional ``$inc`` per line (the filter requires enough units on hand),
and the order is inserted only once every line is taken. When
USE_TRANSACTIONS is off, any failure gives back the lines already taken.
Cancellation is a single conditional status transition, and only the
request that wins it restores stock.
"""

import logging
import secrets
from collections import OrderedDict
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from baskets import clear_cart
from database import create_document, get_db, paginate, serialize, to_object_id, transaction, utcnow
from errors import Conflict, InsufficientStock, NotFound, ValidationFailed
from notifications import send_order_confirmation
from pricing import compute_totals
from products import unit_for
from schemas import (
    ADMIN_CANCELLABLE_STATUSES,
    CANCELLABLE_STATUSES,
    CLOSED_ORDER_STATUSES,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    TimelineEntry,
)
from security import Principal, ensure_owner_or_admin, require_admin, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])

SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "total": "total_cents",
    "total_cents": "total_cents",
    "status": "status",
}


class OrderLineIn(BaseModel):
    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1, le=100)


class OrderAddress(BaseModel):
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


class OrderCreate(BaseModel):
    items: List[OrderLineIn] = Field(..., min_length=1)
    shipping_address: OrderAddress
    billing_address: Optional[OrderAddress] = None
    payment_method: PaymentMethod = "stripe"
    payment_intent_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)
    clear_cart: bool = False


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class StatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = Field(None, max_length=100)


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def get_order_or_404(db: Database, order_id: str) -> dict:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order")})
    if not order:
        raise NotFound("Order", order_id)
    return order


def _stock_filter(line: dict) -> dict:
    filt = {"_id": to_object_id(line["product_id"], "product")}
    if line.get("variant_id"):
        filt["variants"] = {"$elemMatch": {"id": line["variant_id"], "stock": {"$gte": line["quantity"]}}}
    else:
        filt["stock"] = {"$gte": line["quantity"]}
    return filt


def _stock_inc(line: dict, sign: int) -> dict:
    field = "variants.$.stock" if line.get("variant_id") else "stock"
    return {"$inc": {field: -sign * line["quantity"], "sold_count": sign * line["quantity"]}}


def take_stock(db: Database, line: dict, session=None) -> bool:
    """Atomically take ``quantity`` units; False when not enough are left."""
    result = db["product"].update_one(_stock_filter(line), _stock_inc(line, 1), session=session)
    return result.modified_count == 1


def restore_stock(db: Database, line: dict, session=None) -> None:
    filt = {"_id": to_object_id(line["product_id"], "product")}
    if line.get("variant_id"):
        filt["variants.id"] = line["variant_id"]
    result = db["product"].update_one(filt, _stock_inc(line, -1), session=session)
    if result.matched_count == 0:
        logger.warning("Could not restore %d units of %s: product is gone", line["quantity"], line["product_id"])


def _aggregate_lines(items: List[OrderLineIn]) -> "OrderedDict":
    lines = OrderedDict()
    for item in items:
        key = (item.product_id, item.variant_id)
        lines[key] = lines.get(key, 0) + item.quantity
    return lines


def _price_lines(db: Database, items: List[OrderLineIn]) -> List[OrderItem]:
    """Check every line against the catalog and snapshot its price."""
    priced = []
    for (product_id, variant_id), quantity in _aggregate_lines(items).items():
        product = db["product"].find_one({"_id": to_object_id(product_id, "product")})
        if not product or not product.get("is_active", True):
            raise ValidationFailed(f"Product not found: {product_id}", code="PRODUCT_NOT_FOUND")
        try:
            price, stock, variant = unit_for(product, variant_id)
        except NotFound:
            raise ValidationFailed(f"Variant not found: {variant_id}", code="VARIANT_NOT_FOUND")
        if stock < quantity:
            raise InsufficientStock(product["name"], stock)
        priced.append(OrderItem(
            product_id=product_id,
            variant_id=variant_id,
            name=product["name"] if not variant else f"{product['name']} - {variant['name']}",
            sku=(variant or product).get("sku"),
            price_cents=price,
            quantity=quantity,
            total_cents=price * quantity,
            image=(product.get("images") or [None])[0],
        ))
    return priced


def place_order(db: Database, principal: Principal, payload: OrderCreate) -> dict:
    items = _price_lines(db, payload.items)
    totals = compute_totals(sum(i.total_cents for i in items))
    shipping = payload.shipping_address.model_dump()
    order = Order(
        order_number=generate_order_number(),
        user_id=principal.id,
        items=items,
        shipping_address=shipping,
        billing_address=payload.billing_address.model_dump() if payload.billing_address else shipping,
        payment_method=payload.payment_method,
        payment_intent_id=payload.payment_intent_id,
        subtotal_cents=totals["subtotal_cents"],
        tax_cents=totals["tax_cents"],
        shipping_cents=totals["shipping_cents"],
        total_cents=totals["total_cents"],
        currency=totals["currency"],
        notes=payload.notes,
        timeline=[TimelineEntry(status="pending", note="Order placed", updated_by=principal.id)],
    )
    lines = [i.model_dump() for i in items]

    with transaction() as session:
        taken = []
        try:
            for line in lines:
                if not take_stock(db, line, session=session):
                    product = db["product"].find_one({"_id": to_object_id(line["product_id"])}, session=session)
                    _, available, _ = unit_for(product, line.get("variant_id")) if product else (0, 0, None)
                    raise InsufficientStock(line["name"], available)
                taken.append(line)
            order_id = create_document("order", order, session=session)
            if payload.clear_cart:
                clear_cart(db, principal.id, session=session)
        except Exception:
            if session is None:
                for line in taken:
                    restore_stock(db, line)
            raise

    created = db["order"].find_one({"_id": to_object_id(order_id)})
    logger.info("Order %s placed by %s, total %d", created["order_number"], principal.id, created["total_cents"])
    send_order_confirmation(principal.email, created)
    return created


def cancel_order(
    db: Database,
    order: dict,
    principal: Principal,
    reason: Optional[str] = None,
    allowed=CANCELLABLE_STATUSES,
) -> dict:
    """Move the order to cancelled and give its stock back.

    The transition only matches while the order is in one of ``allowed``,
    so of two concurrent cancels exactly one restores stock.
    """
    now = utcnow()
    entry = TimelineEntry(
        status="cancelled",
        note=f"Order cancelled: {reason or 'No reason provided'}",
        updated_by=principal.id,
    )
    with transaction() as session:
        updated = db["order"].find_one_and_update(
            {"_id": order["_id"], "status": {"$in": list(allowed)}},
            {
                "$set": {
                    "status": "cancelled",
                    "cancellation_reason": reason,
                    "cancelled_at": now,
                    "updated_at": now,
                },
                "$push": {"timeline": entry.model_dump()},
            },
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            raise Conflict("Order cannot be cancelled at this stage", code="ORDER_NOT_CANCELLABLE")
        for line in updated.get("items", []):
            restore_stock(db, line, session=session)

    logger.info("Order %s cancelled by %s", updated["order_number"], principal.id)
    return updated


@router.post("", status_code=201)
def create_order(
    payload: OrderCreate,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    order = place_order(db, principal, payload)
    return {"success": True, "message": "Order created successfully", "data": serialize(order)}


@router.get("")
def list_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    filt = {"user_id": principal.id}
    if status:
        filt["status"] = status
    total = db["order"].count_documents(filt)
    cursor = db["order"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    return {
        "success": True,
        "data": [serialize(o) for o in cursor],
        "pagination": paginate(page, limit, total),
    }


@router.get("/admin/all")
def list_all_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = None,
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    filt = {"status": status} if status else {}
    direction = DESCENDING if sort_order == "desc" else ASCENDING
    total = db["order"].count_documents(filt)
    cursor = (
        db["order"].find(filt)
        .sort(SORT_FIELDS.get(sort_by, "created_at"), direction)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "success": True,
        "data": [serialize(o) for o in cursor],
        "pagination": paginate(page, limit, total),
    }


@router.get("/{order_id}")
def get_order(order_id: str, principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    order = get_order_or_404(db, order_id)
    ensure_owner_or_admin(principal, order["user_id"])
    return {"success": True, "data": serialize(order)}


@router.get("/{order_id}/tracking")
def get_tracking(order_id: str, principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    order = get_order_or_404(db, order_id)
    ensure_owner_or_admin(principal, order["user_id"])
    return {
        "success": True,
        "data": {
            "order_number": order["order_number"],
            "status": order["status"],
            "payment_status": order.get("payment_status"),
            "tracking_number": order.get("tracking_number"),
            "timeline": order.get("timeline", []),
        },
    }


@router.put("/{order_id}/cancel")
def cancel(
    order_id: str,
    payload: Optional[CancelRequest] = None,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    order = get_order_or_404(db, order_id)
    ensure_owner_or_admin(principal, order["user_id"])
    updated = cancel_order(db, order, principal, payload.reason if payload else None)
    return {"success": True, "message": "Order cancelled successfully", "data": serialize(updated)}


@router.put("/{order_id}/status")
def update_status(
    order_id: str,
    payload: StatusUpdate,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    order = get_order_or_404(db, order_id)
    if payload.status == "cancelled":
        updated = cancel_order(db, order, principal, payload.note, allowed=ADMIN_CANCELLABLE_STATUSES)
        return {"success": True, "message": "Order status updated successfully", "data": serialize(updated)}

    now = utcnow()
    changes = {"status": payload.status, "updated_at": now}
    if payload.tracking_number:
        changes["tracking_number"] = payload.tracking_number
    if payload.note:
        changes["admin_notes"] = payload.note
    entry = TimelineEntry(
        status=payload.status,
        note=payload.note or f"Order status updated to {payload.status}",
        updated_by=principal.id,
    )
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$nin": list(CLOSED_ORDER_STATUSES)}},
        {"$set": changes, "$push": {"timeline": entry.model_dump()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # closed orders have already settled their stock
        raise Conflict("Order is closed and can no longer change status", code="ORDER_CLOSED")
    logger.info("Order %s moved to %s by %s", order["order_number"], payload.status, principal.id)
    return {"success": True, "message": "Order status updated successfully", "data": serialize(updated)}
