import os
import logging

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database

import auth
import cart
import catalog
import orders
import payments
from auth import RequestContext, require_admin
from catalog import assign_option_ids
from database import get_db, create_document
from errors import ShopError
from schemas import Product, ProductOption

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Shop API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth.router)
app.include_router(catalog.router)
app.include_router(cart.router)
app.include_router(orders.router)
app.include_router(payments.router)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


def describe_validation_error(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path"))
        field = field or "request body"
        if error.get("type") == "missing":
            messages.append(f"{field} is required")
        else:
            messages.append(f"{field}: {error.get('msg')}")
    return "; ".join(messages) or "Invalid request"


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": describe_validation_error(exc), "code": "validation_error"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("%s %s failed", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "server error", "code": "internal_error"})


@app.get("/")
def read_root():
    return {"message": "Shop API is running"}


@app.get("/api/health")
def health(db: Database = Depends(get_db)):
    if db is None:
        return {"backend": "ok", "database": "not configured", "collections": {}}
    try:
        counts = {name: db[name].count_documents({}) for name in ("user", "category", "product", "order")}
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
        return {"backend": "ok", "database": f"error: {str(e)[:80]}", "collections": {}}
    return {"backend": "ok", "database": "connected", "collections": counts}


# -------------------------------
# Demo data
# -------------------------------

@app.post("/api/seed")
def seed_products(_admin: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    count = db["product"].count_documents({})
    if count > 0:
        return {"message": "Already seeded", "count": count}

    category_id = create_document(db, "category", {"name": "Gift wrap"})
    demo_products = [
        Product(
            name="Classic Wrap",
            description="Kraft paper wrap with a cotton ribbon.",
            category_id=category_id,
            image="https://images.unsplash.com/photo-1513885535751-8b9238bd345a?q=80&w=1600&auto=format&fit=crop",
            is_top=True,
            options=[
                ProductOption(option_name="Small", price=15, stock=40),
                ProductOption(option_name="Large", price=25, sale_price=20, stock=20),
            ],
        ),
        Product(
            name="Gift Box",
            description="Rigid box with tissue paper and a personal card.",
            category_id=category_id,
            image="https://images.unsplash.com/photo-1549465220-1a8b9238cd48?q=80&w=1600&auto=format&fit=crop",
            options=[
                ProductOption(option_name="Standard", price=35, stock=15),
            ],
        ),
    ]

    ids = []
    for p in demo_products:
        data = p.model_dump()
        data["options"] = assign_option_ids(p.options)
        ids.append(create_document(db, "product", data))

    logger.info("Seeded %s demo products", len(ids))
    return {"message": "Seeded", "count": len(ids), "ids": ids}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
