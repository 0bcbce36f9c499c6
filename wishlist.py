import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

from baskets import (
    add_cart_item,
    add_wishlist_item,
    get_or_create_wishlist,
    remove_wishlist_items,
    wishlist_payload,
)
from database import get_db, utcnow
from errors import StoreError
from security import Principal, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wishlist", tags=["wishlist"])


class WishlistAdd(BaseModel):
    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=200)
    priority: Literal["low", "medium", "high"] = "medium"


class MoveToCart(BaseModel):
    item_ids: List[str] = Field(..., min_length=1)


@router.get("")
def get_wishlist(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    wishlist = get_or_create_wishlist(db, principal.id)
    return {"success": True, "data": wishlist_payload(db, wishlist)}


@router.post("")
def add_to_wishlist(
    payload: WishlistAdd,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    wishlist = add_wishlist_item(
        db, principal.id, payload.product_id, payload.variant_id, payload.notes, payload.priority
    )
    return {"success": True, "message": "Item added to wishlist", "data": wishlist_payload(db, wishlist)}


@router.delete("")
def clear_wishlist(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    db["wishlist"].update_one({"user_id": principal.id}, {"$set": {"items": [], "updated_at": utcnow()}})
    return {"success": True, "message": "Wishlist cleared successfully"}


@router.get("/check/{product_id}")
def check_wishlist(
    product_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    found = db["wishlist"].count_documents({"user_id": principal.id, "items.product_id": product_id}) > 0
    return {"success": True, "data": {"inWishlist": found}}


@router.delete("/{item_id}")
def remove_from_wishlist(
    item_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    wishlist, _ = remove_wishlist_items(db, principal.id, [item_id])
    return {"success": True, "message": "Item removed from wishlist", "data": wishlist_payload(db, wishlist)}


@router.post("/move-to-cart")
def move_to_cart(
    payload: MoveToCart,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    """Move wished-for items into the cart, one unit each.

    Lines that cannot go to the cart (out of stock, product removed) stay on
    the wishlist and are reported back.
    """
    wishlist = get_or_create_wishlist(db, principal.id)
    selected = [i for i in wishlist.get("items", []) if i["id"] in payload.item_ids]
    moved, skipped = [], []
    for item in selected:
        try:
            add_cart_item(db, principal.id, item["product_id"], item.get("variant_id"), 1)
        except StoreError as exc:
            skipped.append({"item_id": item["id"], "reason": exc.message})
            continue
        moved.append(item["id"])

    if moved:
        wishlist, _ = remove_wishlist_items(db, principal.id, moved)
    return {
        "success": True,
        "message": f"{len(moved)} items moved to cart",
        "data": {**wishlist_payload(db, wishlist), "moved": moved, "skipped": skipped},
    }
