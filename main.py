import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from starlette.exceptions import HTTPException as StarletteHTTPException

import database
from admin import router as admin_router
from auth import router as auth_router
from cart import router as cart_router
from config import settings
from database import create_document, ensure_indexes, get_db
from errors import StoreError
from orders import router as orders_router
from payments import router as payments_router
from products import router as products_router
from products import slugify
from schemas import Category, Product, Variant
from security import Principal, require_admin
from users import router as users_router
from webhooks import router as webhooks_router
from wishlist import router as wishlist_router

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            ensure_indexes(database.db)
        except Exception:
            logger.error("Could not create indexes", exc_info=True)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "message": exc.message, "code": exc.code},
    )


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Validation failed", "code": "VALIDATION_ERROR", "errors": errors},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


for router in (
    auth_router,
    products_router,
    cart_router,
    wishlist_router,
    orders_router,
    webhooks_router,
    payments_router,
    users_router,
    admin_router,
):
    app.include_router(router)


@app.get("/")
def read_root():
    return {"success": True, "message": "Storefront API ready"}


# Demo catalog for local development, in cents
SEED_CATEGORIES = [
    Category(name="Electronics", slug="electronics", description="Gadgets, devices and accessories", sort_order=1),
    Category(name="Clothing", slug="clothing", description="Everyday apparel", sort_order=2),
    Category(name="Home & Garden", slug="home-garden", description="For the house and the yard", sort_order=3),
    Category(name="Books", slug="books", description="Print and reference", sort_order=4),
]

SEED_PRODUCTS = {
    "Electronics": [
        dict(
            name="Wireless Bluetooth Headphones",
            description="Over-ear headphones with active noise cancellation and 30 hour battery.",
            brand="SoundWave",
            sku="ELEC-HP-001",
            price_cents=8999,
            compare_price_cents=11999,
            stock=50,
            tags=["audio", "wireless"],
            is_featured=True,
        ),
        dict(
            name="Smartphone 128GB",
            description="6.1 inch display, dual camera, 128GB storage.",
            brand="Nova",
            sku="ELEC-PH-002",
            price_cents=69999,
            stock=25,
            tags=["phone"],
        ),
    ],
    "Clothing": [
        dict(
            name="Cotton T-Shirt",
            description="Soft organic cotton tee.",
            sku="CLO-TS-001",
            price_cents=2499,
            stock=100,
            tags=["shirt", "cotton"],
            variants=[
                Variant(name="White", sku="CLO-TS-001-W", price_cents=2499, stock=40, attributes=[{"Color": "White"}]),
                Variant(name="Black", sku="CLO-TS-001-B", price_cents=2499, stock=40, attributes=[{"Color": "Black"}]),
            ],
            is_featured=True,
        ),
    ],
    "Home & Garden": [
        dict(
            name="Coffee Maker",
            description="12 cup programmable drip coffee maker.",
            sku="HOME-CM-001",
            price_cents=14999,
            stock=8,
            tags=["kitchen"],
        ),
    ],
    "Books": [
        dict(
            name="The Art of Programming",
            description="A practical guide to writing clear software.",
            sku="BOOK-AP-001",
            price_cents=4999,
            stock=30,
            tags=["programming"],
        ),
    ],
}


@app.post("/api/seed")
def seed_catalog(principal: Principal = Depends(require_admin), db: Database = Depends(get_db)):
    """Load the demo catalog into an empty database."""
    if db["product"].count_documents({}) or db["category"].count_documents({}):
        return {"success": True, "message": "Catalog already present, nothing seeded"}
    created = 0
    for category in SEED_CATEGORIES:
        category_id = create_document("category", category)
        for data in SEED_PRODUCTS.get(category.name, []):
            create_document("product", Product(slug=slugify(data["name"]), category_id=category_id, **data))
            created += 1
    logger.info("Seeded %d categories and %d products for %s", len(SEED_CATEGORIES), created, principal.id)
    return {"success": True, "message": f"Seeded {created} products"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
        "stripe": "✅ Configured" if settings.stripe_secret_key else "❌ Not Configured",
        "email": "✅ Configured" if settings.resend_api_key else "❌ Not Configured",
    }
    _db = database.db
    if _db is not None:
        response["database"] = "✅ Available"
        response["database_url"] = "✅ Set" if settings.database_url else "❌ Not Set"
        response["database_name"] = _db.name
        response["connection_status"] = "Connected"
        try:
            response["collections"] = _db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
        except Exception as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
