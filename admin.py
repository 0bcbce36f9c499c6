"""
Admin dashboard and store management

Every figure is recomputed from the raw collections on each request.
"""

import logging
import re
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, EmailStr, Field
from pymongo import DESCENDING
from pymongo.database import Database

from config import settings
from database import get_db, paginate, serialize, to_object_id, utcnow
from errors import Conflict, NotFound
from schemas import ACTIVE_ORDER_STATUSES, REVENUE_PAYMENT_STATUSES, Role
from security import Principal, public_user, require_admin
from webhooks import retry_failed_events

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])

PERIODS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
SETTINGS_ID = "store"


class RoleUpdate(BaseModel):
    role: Role


class StoreSettings(BaseModel):
    """Store details an admin may edit. Pricing rules live in configuration."""
    store_name: Optional[str] = Field(None, min_length=1, max_length=100)
    contact_email: Optional[EmailStr] = None
    support_phone: Optional[str] = Field(None, max_length=30)
    announcement: Optional[str] = Field(None, max_length=500)
    maintenance_mode: Optional[bool] = None


def _revenue(db: Database, since) -> dict:
    rows = list(db["order"].aggregate([
        {"$match": {"created_at": {"$gte": since}, "payment_status": {"$in": list(REVENUE_PAYMENT_STATUSES)}}},
        {"$group": {
            "_id": None,
            "revenue_cents": {"$sum": "$total_cents"},
            "refunded_cents": {"$sum": "$refunded_cents"},
            "orders": {"$sum": 1},
        }},
    ]))
    if not rows:
        return {"revenue_cents": 0, "orders": 0}
    return {"revenue_cents": rows[0]["revenue_cents"] - rows[0]["refunded_cents"], "orders": rows[0]["orders"]}


def _net_cents(order: dict) -> int:
    return order["total_cents"] - order.get("refunded_cents", 0)


def _low_stock(db: Database, limit: int = 10) -> list:
    cursor = (
        db["product"].find(
            {"is_active": True, "stock": {"$lte": settings.low_stock_threshold}},
            {"name": 1, "sku": 1, "stock": 1, "low_stock_threshold": 1},
        )
        .sort("stock", 1)
        .limit(limit)
    )
    return [serialize(p) for p in cursor]


def _day(value) -> str:
    return value.strftime("%Y-%m-%d")


@router.get("/dashboard")
def dashboard(principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    now = utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    year_start = month_start.replace(month=1)

    status_distribution = {
        row["_id"]: row["count"]
        for row in db["order"].aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
    }
    recent = db["order"].find({}, {"timeline": 0}).sort("created_at", DESCENDING).limit(5)
    top_sellers = (
        db["product"].find({"is_active": True}, {"name": 1, "sold_count": 1, "price_cents": 1, "rating": 1})
        .sort("sold_count", DESCENDING)
        .limit(5)
    )
    return {
        "success": True,
        "data": {
            "counts": {
                "users": db["user"].count_documents({"is_active": True}),
                "products": db["product"].count_documents({"is_active": True}),
                "categories": db["category"].count_documents({"is_active": True}),
                "orders": db["order"].count_documents({}),
            },
            "month": _revenue(db, month_start),
            "year": _revenue(db, year_start),
            "recentOrders": [serialize(o) for o in recent],
            "lowStockProducts": _low_stock(db),
            "topProducts": [serialize(p) for p in top_sellers],
            "orderStatusDistribution": status_distribution,
        },
    }


@router.get("/analytics")
def analytics(
    period: Literal["7d", "30d", "90d", "1y"] = "30d",
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    start = utcnow() - timedelta(days=PERIODS[period])

    user_trend = Counter(_day(u["created_at"]) for u in db["user"].find({"created_at": {"$gte": start}}, {"created_at": 1}))
    order_trend = defaultdict(lambda: {"orders": 0, "revenue_cents": 0})
    revenue_by_category = defaultdict(int)
    paid_orders = []
    for order in db["order"].find(
        {"created_at": {"$gte": start}},
        {"created_at": 1, "total_cents": 1, "refunded_cents": 1, "payment_status": 1, "items": 1},
    ):
        bucket = order_trend[_day(order["created_at"])]
        bucket["orders"] += 1
        if order.get("payment_status") in REVENUE_PAYMENT_STATUSES:
            bucket["revenue_cents"] += _net_cents(order)
            paid_orders.append(order)

    product_ids = {i["product_id"] for o in paid_orders for i in o.get("items", [])}
    product_category = {
        str(p["_id"]): p.get("category_id")
        for p in db["product"].find({"_id": {"$in": [to_object_id(i) for i in product_ids]}}, {"category_id": 1})
    }
    for order in paid_orders:
        net, total = _net_cents(order), order["total_cents"]
        for item in order.get("items", []):
            # refunds are spread over the lines pro rata
            share = item["total_cents"] * net // total if total else 0
            revenue_by_category[product_category.get(item["product_id"])] += share

    categories = {str(c["_id"]): c["name"] for c in db["category"].find({}, {"name": 1})}
    performance = [
        {
            "category_id": row["_id"],
            "category": categories.get(row["_id"], "Uncategorized"),
            "products": row["products"],
            "sold": row["sold"],
            "avg_rating": round(row["avg_rating"] or 0, 1),
        }
        for row in db["product"].aggregate([
            {"$group": {
                "_id": "$category_id",
                "products": {"$sum": 1},
                "sold": {"$sum": "$sold_count"},
                "avg_rating": {"$avg": "$rating"},
            }},
        ])
    ]
    return {
        "success": True,
        "data": {
            "period": period,
            "userTrends": [{"date": d, "count": c} for d, c in sorted(user_trend.items())],
            "orderTrends": [{"date": d, **v} for d, v in sorted(order_trend.items())],
            "productPerformance": sorted(performance, key=lambda r: r["sold"], reverse=True),
            "revenueByCategory": sorted(
                (
                    {"category_id": cid, "category": categories.get(cid, "Uncategorized"), "revenue_cents": cents}
                    for cid, cents in revenue_by_category.items()
                ),
                key=lambda r: r["revenue_cents"],
                reverse=True,
            ),
        },
    }


@router.get("/notifications")
def notifications(principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    low_stock = _low_stock(db)
    pending = db["order"].count_documents({"status": "pending"})
    new_users = db["user"].count_documents({"created_at": {"$gte": utcnow() - timedelta(hours=24)}})

    items = []
    if low_stock:
        items.append({
            "type": "low_stock",
            "priority": "high",
            "message": f"{len(low_stock)} products are running low on stock",
            "data": low_stock,
        })
    if pending:
        items.append({"type": "pending_orders", "priority": "medium", "message": f"{pending} orders are pending"})
    if new_users:
        items.append({"type": "new_users", "priority": "low", "message": f"{new_users} new users in the last 24 hours"})
    return {"success": True, "data": items}


@router.get("/users")
def list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    search: Optional[str] = None,
    role: Optional[Role] = None,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    filt = {}
    if role:
        filt["role"] = role
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"email": pattern}]
    total = db["user"].count_documents(filt)
    cursor = db["user"].find(filt).sort("created_at", DESCENDING).skip((page - 1) * limit).limit(limit)
    users = [
        {**public_user(u), "isActive": u.get("is_active", True), "createdAt": u.get("created_at")}
        for u in cursor
    ]
    return {"success": True, "data": users, "pagination": paginate(page, limit, total)}


@router.put("/users/{user_id}/role")
def update_user_role(
    user_id: str,
    payload: RoleUpdate,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    if user_id == principal.id:
        raise Conflict("You cannot change your own role", code="SELF_ROLE_CHANGE")
    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user:
        raise NotFound("User", user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": payload.role, "updated_at": utcnow()}})
    logger.info("User %s role set to %s by %s", user_id, payload.role, principal.id)
    return {
        "success": True,
        "message": "User role updated successfully",
        "data": public_user({**user, "role": payload.role}),
    }


@router.delete("/users/{user_id}")
def delete_user(
    user_id: str,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    if user_id == principal.id:
        raise Conflict("You cannot delete your own account", code="SELF_DELETE")
    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user:
        raise NotFound("User", user_id)
    if db["order"].count_documents({"user_id": user_id, "status": {"$in": list(ACTIVE_ORDER_STATUSES)}}):
        raise Conflict("Cannot delete user with active orders", code="ACTIVE_ORDERS")
    db["user"].delete_one({"_id": user["_id"]})
    db["cart"].delete_many({"user_id": user_id})
    db["wishlist"].delete_many({"user_id": user_id})
    logger.info("User %s deleted by %s", user_id, principal.id)
    return {"success": True, "message": "User deleted successfully"}


@router.get("/settings")
def get_settings(principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    stored = db["setting"].find_one({"_id": SETTINGS_ID}) or {}
    return {"success": True, "data": serialize(stored) or {}}


@router.put("/settings")
def update_settings(
    payload: StoreSettings,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    changes.update({"updated_by": principal.id, "updated_at": utcnow()})
    db["setting"].update_one({"_id": SETTINGS_ID}, {"$set": changes}, upsert=True)
    stored = db["setting"].find_one({"_id": SETTINGS_ID})
    return {"success": True, "message": "Settings updated successfully", "data": serialize(stored)}


@router.post("/webhooks/retry")
def retry_webhooks(
    limit: int = Query(50, ge=1, le=500),
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    results = retry_failed_events(db, limit=limit)
    return {"success": True, "data": results}
