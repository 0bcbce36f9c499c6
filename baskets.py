"""
Per-user cart and wishlist documents

Both collections hold exactly one document per user (unique index on
``user_id``), created lazily on first access. Item edits go through
positional or ``$push``/``$pull`` updates so concurrent edits to different
lines of the same document do not overwrite each other.
"""

import logging
from typing import List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import utcnow
from errors import Conflict, InsufficientStock, NotFound
from pricing import compute_totals
from products import get_product_or_404, unit_for
from schemas import Cart, CartItem, Wishlist, WishlistItem

logger = logging.getLogger(__name__)


def _get_or_create(db: Database, collection: str, factory) -> dict:
    doc = db[collection].find_one({"user_id": factory.user_id})
    if doc:
        return doc
    data = factory.model_dump()
    now = utcnow()
    data["created_at"] = now
    data["updated_at"] = now
    try:
        db[collection].insert_one(data)
    except DuplicateKeyError:
        # created by a concurrent request
        pass
    return db[collection].find_one({"user_id": factory.user_id})


def get_or_create_cart(db: Database, user_id: str) -> dict:
    return _get_or_create(db, "cart", Cart(user_id=user_id))


def get_or_create_wishlist(db: Database, user_id: str) -> dict:
    return _get_or_create(db, "wishlist", Wishlist(user_id=user_id))


def _same_line(item: dict, product_id: str, variant_id: Optional[str]) -> bool:
    return item.get("product_id") == product_id and item.get("variant_id") == variant_id


# ---------------------------------------------------------------------------
# Cart
# ---------------------------------------------------------------------------

def add_cart_item(db: Database, user_id: str, product_id: str, variant_id: Optional[str], quantity: int) -> dict:
    product = get_product_or_404(db, product_id)
    if not product.get("is_active", True):
        raise NotFound("Product", product_id)
    price, stock, _ = unit_for(product, variant_id)
    if stock < quantity:
        raise InsufficientStock(product["name"], stock)

    cart = get_or_create_cart(db, user_id)
    existing = next((i for i in cart.get("items", []) if _same_line(i, product_id, variant_id)), None)
    now = utcnow()
    if existing:
        new_quantity = existing["quantity"] + quantity
        if new_quantity > stock:
            raise Conflict(
                f"Cannot add {quantity} more items. Only {max(stock - existing['quantity'], 0)} available",
                code="INSUFFICIENT_STOCK",
            )
        db["cart"].update_one(
            {"_id": cart["_id"], "items.id": existing["id"]},
            {"$set": {
                "items.$.quantity": new_quantity,
                "items.$.price_cents": price,
                "items.$.updated_at": now,
                "updated_at": now,
            }},
        )
    else:
        item = CartItem(product_id=product_id, variant_id=variant_id, quantity=quantity, price_cents=price)
        db["cart"].update_one(
            {"_id": cart["_id"]},
            {"$push": {"items": item.model_dump()}, "$set": {"updated_at": now}},
        )
    return db["cart"].find_one({"_id": cart["_id"]})


def set_cart_quantity(db: Database, user_id: str, item_id: str, quantity: int) -> dict:
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart")
    item = next((i for i in cart.get("items", []) if i.get("id") == item_id), None)
    if not item:
        raise NotFound("Cart item", item_id)

    now = utcnow()
    if quantity == 0:
        db["cart"].update_one(
            {"_id": cart["_id"]},
            {"$pull": {"items": {"id": item_id}}, "$set": {"updated_at": now}},
        )
    else:
        product = get_product_or_404(db, item["product_id"])
        price, stock, _ = unit_for(product, item.get("variant_id"))
        if stock < quantity:
            raise InsufficientStock(product["name"], stock)
        db["cart"].update_one(
            {"_id": cart["_id"], "items.id": item_id},
            {"$set": {
                "items.$.quantity": quantity,
                "items.$.price_cents": price,
                "items.$.updated_at": now,
                "updated_at": now,
            }},
        )
    return db["cart"].find_one({"_id": cart["_id"]})


def remove_cart_items(db: Database, user_id: str, item_ids: List[str]) -> Tuple[dict, List[dict]]:
    """Pull the given lines out of the cart. Returns (cart, removed lines)."""
    cart = db["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart")
    removed = [i for i in cart.get("items", []) if i.get("id") in item_ids]
    if not removed:
        raise NotFound("Cart item")
    db["cart"].update_one(
        {"_id": cart["_id"]},
        {"$pull": {"items": {"id": {"$in": [i["id"] for i in removed]}}}, "$set": {"updated_at": utcnow()}},
    )
    return db["cart"].find_one({"_id": cart["_id"]}), removed


def clear_cart(db: Database, user_id: str, session=None) -> bool:
    result = db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": [], "updated_at": utcnow()}},
        session=session,
    )
    return result.matched_count > 0


def reconcile_cart(db: Database, cart: dict) -> Tuple[List[dict], List[dict]]:
    """Check every line against live stock and price.

    Quantities above stock are clamped, lines with no stock (or whose product
    is gone) are dropped, and stale price snapshots are refreshed. The cart is
    written back only when something changed. Returns (view items,
    adjustments).
    """
    kept, view, adjustments = [], [], []
    changed = False
    for item in cart.get("items", []):
        product = db["product"].find_one({"_id": _oid_or_none(item.get("product_id"))})
        if not product or not product.get("is_active", True):
            adjustments.append({"item_id": item["id"], "action": "removed", "reason": "product unavailable"})
            changed = True
            continue
        try:
            price, stock, variant = unit_for(product, item.get("variant_id"))
        except NotFound:
            adjustments.append({"item_id": item["id"], "action": "removed", "reason": "variant unavailable"})
            changed = True
            continue
        if stock <= 0:
            adjustments.append({"item_id": item["id"], "action": "removed", "reason": "out of stock"})
            changed = True
            continue
        if item["quantity"] > stock:
            adjustments.append({
                "item_id": item["id"],
                "action": "clamped",
                "from": item["quantity"],
                "to": stock,
            })
            item = {**item, "quantity": stock, "updated_at": utcnow()}
            changed = True
        if item.get("price_cents") != price:
            item = {**item, "price_cents": price}
            changed = True
        kept.append(item)
        view.append({
            **item,
            "name": product["name"],
            "variant_name": variant["name"] if variant else None,
            "image": (product.get("images") or [None])[0],
            "stock": stock,
            "line_total_cents": price * item["quantity"],
        })

    if changed:
        logger.info("Cart %s reconciled: %s", cart["_id"], adjustments)
        db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": kept, "updated_at": utcnow()}})
    return view, adjustments


def cart_payload(db: Database, cart: dict) -> dict:
    items, adjustments = reconcile_cart(db, cart)
    totals = compute_totals(sum(i["line_total_cents"] for i in items))
    return {
        "items": items,
        "totals": totals,
        "itemCount": len(items),
        "adjustments": adjustments,
    }


# ---------------------------------------------------------------------------
# Wishlist
# ---------------------------------------------------------------------------

def add_wishlist_item(
    db: Database,
    user_id: str,
    product_id: str,
    variant_id: Optional[str] = None,
    notes: Optional[str] = None,
    priority: str = "medium",
) -> dict:
    product = get_product_or_404(db, product_id)
    if variant_id:
        unit_for(product, variant_id)
    wishlist = get_or_create_wishlist(db, user_id)
    if any(_same_line(i, product_id, variant_id) for i in wishlist.get("items", [])):
        raise Conflict("Product already exists in wishlist", code="DUPLICATE_WISHLIST_ITEM")
    item = WishlistItem(product_id=product_id, variant_id=variant_id, notes=notes, priority=priority)
    db["wishlist"].update_one(
        {"_id": wishlist["_id"]},
        {"$push": {"items": item.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    return db["wishlist"].find_one({"_id": wishlist["_id"]})


def remove_wishlist_items(db: Database, user_id: str, item_ids: List[str]) -> Tuple[dict, List[dict]]:
    wishlist = db["wishlist"].find_one({"user_id": user_id})
    if not wishlist:
        raise NotFound("Wishlist")
    removed = [i for i in wishlist.get("items", []) if i.get("id") in item_ids]
    if not removed:
        raise NotFound("Wishlist item")
    db["wishlist"].update_one(
        {"_id": wishlist["_id"]},
        {"$pull": {"items": {"id": {"$in": [i["id"] for i in removed]}}}, "$set": {"updated_at": utcnow()}},
    )
    return db["wishlist"].find_one({"_id": wishlist["_id"]}), removed


def wishlist_payload(db: Database, wishlist: dict) -> dict:
    items = []
    for item in wishlist.get("items", []):
        product = db["product"].find_one({"_id": _oid_or_none(item.get("product_id"))}, {"reviews": 0})
        items.append({
            **item,
            "product": {
                "name": product["name"],
                "price_cents": product["price_cents"],
                "image": (product.get("images") or [None])[0],
                "stock": product.get("stock", 0),
                "rating": product.get("rating", 0),
                "num_reviews": product.get("num_reviews", 0),
            } if product else None,
        })
    return {"items": items, "itemCount": len(items)}


def _oid_or_none(value):
    return ObjectId(value) if value and ObjectId.is_valid(value) else None
