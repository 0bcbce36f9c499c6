import logging
import re
from typing import List, Optional, Tuple

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo import ASCENDING, DESCENDING
from pymongo.database import Database

from database import create_document, get_db, paginate, serialize, to_object_id, utcnow
from errors import Conflict, NotFound, ValidationFailed
from schemas import Category, Product, Review, Variant
from security import Principal, optional_user, require_admin, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])

SORT_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "price": "price_cents",
    "price_cents": "price_cents",
    "name": "name",
    "rating": "rating",
    "soldCount": "sold_count",
    "sold_count": "sold_count",
}


def slugify(name: str) -> str:
    return re.sub(r"(^-|-$)", "", re.sub(r"[^a-z0-9]+", "-", name.lower()))


def get_product_or_404(db: Database, product_id: str, session=None) -> dict:
    prod = db["product"].find_one({"_id": to_object_id(product_id, "product")}, session=session)
    if not prod:
        raise NotFound("Product", product_id)
    return prod


def unit_for(product: dict, variant_id: Optional[str] = None) -> Tuple[int, int, Optional[dict]]:
    """Return (unit price in cents, units on hand, variant) for a product line."""
    if variant_id:
        for variant in product.get("variants", []):
            if variant.get("id") == variant_id and variant.get("is_active", True):
                return int(variant["price_cents"]), int(variant.get("stock", 0)), variant
        raise NotFound("Variant", variant_id)
    return int(product["price_cents"]), int(product.get("stock", 0)), None


def category_ids_under(db: Database, category_id: str) -> List[str]:
    """The category plus every descendant, via the materialized path."""
    ids = [category_id]
    ids.extend(str(c["_id"]) for c in db["category"].find({"path": category_id}, {"_id": 1}))
    return ids


def product_view(doc: dict, with_reviews: bool = True) -> dict:
    out = serialize(doc, exclude=() if with_reviews else ("reviews",))
    out["in_stock"] = out.get("stock", 0) > 0
    out["is_low_stock"] = 0 < out.get("stock", 0) <= out.get("low_stock_threshold", 5)
    return out


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class VariantIn(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    sku: str = Field(..., min_length=1)
    price_cents: int = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    attributes: List[dict] = Field(default_factory=list)
    is_active: bool = True

    def to_variant(self) -> Variant:
        data = self.model_dump(exclude_none=True)
        return Variant(**data)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    short_description: Optional[str] = Field(None, max_length=200)
    category_id: str
    brand: Optional[str] = None
    sku: Optional[str] = None
    price_cents: int = Field(..., ge=0)
    compare_price_cents: Optional[int] = Field(None, ge=0)
    stock: int = Field(..., ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    images: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    variants: List[VariantIn] = Field(default_factory=list)
    is_featured: bool = False


class ProductUpdate(BaseModel):
    """Fields an admin may change on a product. Anything else is ignored."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    short_description: Optional[str] = Field(None, max_length=200)
    category_id: Optional[str] = None
    brand: Optional[str] = None
    sku: Optional[str] = None
    price_cents: Optional[int] = Field(None, ge=0)
    compare_price_cents: Optional[int] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    low_stock_threshold: Optional[int] = Field(None, ge=0)
    images: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    variants: Optional[List[VariantIn]] = None
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = Field(None, max_length=100)
    comment: str = Field("", max_length=500)


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    parent_id: Optional[str] = None
    is_featured: bool = False
    sort_order: int = 0


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

@router.get("")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(12, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[int] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[int] = Query(None, alias="maxPrice", ge=0),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    search: Optional[str] = None,
    in_stock: Optional[bool] = Query(None, alias="inStock"),
    rating: Optional[float] = Query(None, ge=0, le=5),
    db: Database = Depends(get_db),
):
    filt = {"is_active": True}
    if category:
        filt["category_id"] = {"$in": category_ids_under(db, category)}
    if min_price is not None or max_price is not None:
        filt["price_cents"] = {}
        if min_price is not None:
            filt["price_cents"]["$gte"] = min_price
        if max_price is not None:
            filt["price_cents"]["$lte"] = max_price
    if in_stock:
        filt["stock"] = {"$gt": 0}
    if rating is not None:
        filt["rating"] = {"$gte": rating}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"tags": pattern}]

    sort_field = SORT_FIELDS.get(sort_by, "created_at")
    direction = DESCENDING if sort_order == "desc" else ASCENDING

    total = db["product"].count_documents(filt)
    cursor = (
        db["product"].find(filt, {"reviews": 0})
        .sort(sort_field, direction)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    return {
        "success": True,
        "data": [product_view(p, with_reviews=False) for p in cursor],
        "pagination": paginate(page, limit, total),
    }


@router.get("/featured")
def featured_products(limit: int = Query(8, ge=1, le=50), db: Database = Depends(get_db)):
    cursor = (
        db["product"].find({"is_featured": True, "is_active": True}, {"reviews": 0})
        .sort([("rating", DESCENDING), ("num_reviews", DESCENDING)])
        .limit(limit)
    )
    return {"success": True, "data": [product_view(p, with_reviews=False) for p in cursor]}


@router.get("/categories")
def list_categories(db: Database = Depends(get_db)):
    categories = []
    for cat in db["category"].find({"is_active": True}).sort([("sort_order", ASCENDING), ("name", ASCENDING)]):
        out = serialize(cat)
        out["product_count"] = db["product"].count_documents({"category_id": out["id"], "is_active": True})
        categories.append(out)
    return {"success": True, "data": categories}


@router.post("/categories", status_code=201)
def create_category(
    payload: CategoryCreate,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    if db["category"].find_one({"name": payload.name}):
        raise Conflict("Category already exists")
    level, path = 0, []
    if payload.parent_id:
        parent = db["category"].find_one({"_id": to_object_id(payload.parent_id, "category")})
        if not parent:
            raise NotFound("Parent category", payload.parent_id)
        level = parent.get("level", 0) + 1
        path = list(parent.get("path", [])) + [str(parent["_id"])]
    category = Category(
        **payload.model_dump(),
        slug=slugify(payload.name),
        level=level,
        path=path,
        created_by=principal.id,
    )
    category_id = create_document("category", category)
    created = db["category"].find_one({"_id": to_object_id(category_id)})
    return {"success": True, "message": "Category created successfully", "data": serialize(created)}


@router.get("/categories/{category_id}/breadcrumb")
def category_breadcrumb(category_id: str, db: Database = Depends(get_db)):
    category = db["category"].find_one({"_id": to_object_id(category_id, "category")})
    if not category:
        raise NotFound("Category", category_id)
    ancestors = {
        str(c["_id"]): c
        for c in db["category"].find({"_id": {"$in": [to_object_id(i) for i in category.get("path", [])]}})
    }
    crumbs = [
        {"id": i, "name": ancestors[i]["name"], "slug": ancestors[i]["slug"]}
        for i in category.get("path", [])
        if i in ancestors
    ]
    crumbs.append({"id": str(category["_id"]), "name": category["name"], "slug": category["slug"]})
    return {"success": True, "data": crumbs}


@router.get("/{product_id}")
def get_product(
    product_id: str,
    principal: Optional[Principal] = Depends(optional_user),
    db: Database = Depends(get_db),
):
    product = get_product_or_404(db, product_id)
    if not product.get("is_active", True) and not (principal and principal.is_admin):
        raise NotFound("Product", product_id)
    return {"success": True, "data": product_view(product)}


@router.post("", status_code=201)
def create_product(
    payload: ProductCreate,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    if not db["category"].find_one({"_id": to_object_id(payload.category_id, "category")}):
        raise ValidationFailed("Category not found", code="CATEGORY_NOT_FOUND")
    data = payload.model_dump(exclude={"variants"})
    product = Product(
        **data,
        slug=slugify(payload.name),
        variants=[v.to_variant() for v in payload.variants],
        created_by=principal.id,
    )
    product_id = create_document("product", product)
    logger.info("Product %s created by %s", product_id, principal.id)
    return {
        "success": True,
        "message": "Product created successfully",
        "data": product_view(get_product_or_404(db, product_id)),
    }


@router.put("/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    product = get_product_or_404(db, product_id)
    changes = payload.model_dump(exclude_unset=True, exclude={"variants"})
    if "category_id" in changes:
        if not changes["category_id"] or not db["category"].find_one(
            {"_id": to_object_id(changes["category_id"], "category")}
        ):
            raise ValidationFailed("Category not found", code="CATEGORY_NOT_FOUND")
    if changes.get("name"):
        changes["slug"] = slugify(changes["name"])
    if payload.variants is not None:
        changes["variants"] = [v.to_variant().model_dump() for v in payload.variants]
    changes["updated_by"] = principal.id
    changes["updated_at"] = utcnow()
    db["product"].update_one({"_id": product["_id"]}, {"$set": changes})
    return {
        "success": True,
        "message": "Product updated successfully",
        "data": product_view(get_product_or_404(db, product_id)),
    }


@router.delete("/{product_id}")
def delete_product(
    product_id: str,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    product = get_product_or_404(db, product_id)
    db["product"].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted by %s", product_id, principal.id)
    return {"success": True, "message": "Product deleted successfully"}


@router.post("/{product_id}/reviews", status_code=201)
def add_review(
    product_id: str,
    payload: ReviewCreate,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    product = get_product_or_404(db, product_id)
    reviews = product.get("reviews", [])
    if any(r.get("user_id") == principal.id for r in reviews):
        raise Conflict("You have already reviewed this product", code="DUPLICATE_REVIEW")

    review = Review(user_id=principal.id, user_name=principal.name, **payload.model_dump()).model_dump()
    ratings = [r["rating"] for r in reviews] + [review["rating"]]
    db["product"].update_one(
        {"_id": product["_id"]},
        {
            "$push": {"reviews": review},
            "$set": {
                "rating": round(sum(ratings) / len(ratings), 1),
                "num_reviews": len(ratings),
                "updated_at": utcnow(),
            },
        },
    )
    return {"success": True, "message": "Review added successfully", "data": review}
