import logging
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from pymongo.database import Database

from baskets import (
    add_cart_item,
    add_wishlist_item,
    cart_payload,
    clear_cart,
    get_or_create_cart,
    remove_cart_items,
    set_cart_quantity,
)
from database import get_db
from errors import Conflict, NotFound
from security import Principal, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])


class CartAdd(BaseModel):
    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1, le=100)


class CartQuantity(BaseModel):
    quantity: int = Field(..., ge=0, le=100)


class MoveToWishlist(BaseModel):
    item_ids: List[str] = Field(..., min_length=1)


@router.get("")
def get_cart(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    cart = get_or_create_cart(db, principal.id)
    return {"success": True, "data": cart_payload(db, cart)}


@router.post("")
def add_to_cart(
    payload: CartAdd,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    cart = add_cart_item(db, principal.id, payload.product_id, payload.variant_id, payload.quantity)
    return {"success": True, "message": "Item added to cart", "data": cart_payload(db, cart)}


@router.put("/{item_id}")
def update_cart_item(
    item_id: str,
    payload: CartQuantity,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    cart = set_cart_quantity(db, principal.id, item_id, payload.quantity)
    message = "Item removed from cart" if payload.quantity == 0 else "Cart item updated"
    return {"success": True, "message": message, "data": cart_payload(db, cart)}


@router.delete("")
def empty_cart(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    if not clear_cart(db, principal.id):
        raise NotFound("Cart")
    return {"success": True, "message": "Cart cleared successfully"}


@router.delete("/{item_id}")
def remove_from_cart(
    item_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    cart, _ = remove_cart_items(db, principal.id, [item_id])
    return {"success": True, "message": "Item removed from cart", "data": cart_payload(db, cart)}


@router.post("/move-to-wishlist")
def move_to_wishlist(
    payload: MoveToWishlist,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    cart, removed = remove_cart_items(db, principal.id, payload.item_ids)
    moved = 0
    for item in removed:
        try:
            add_wishlist_item(db, principal.id, item["product_id"], item.get("variant_id"))
            moved += 1
        except (Conflict, NotFound):
            # already wished for, or the product is gone
            pass
    logger.info("Moved %d of %d cart lines to wishlist for %s", moved, len(removed), principal.id)
    return {
        "success": True,
        "message": f"{len(removed)} items moved to wishlist",
        "data": cart_payload(db, cart),
    }
