import logging
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends
from pymongo.database import Database

from auth import RequestContext, require_admin
from database import get_db, create_document, get_documents, oid, serialize, utcnow
from errors import NotFound, ValidationError
from schemas import Category, Product, ProductOption, ProductUpdate

logger = logging.getLogger(__name__)

router = APIRouter()

# Conditional decrement can lose a race against another write to the same
# option; after this many rounds we give up.
DECREMENT_ATTEMPTS = 3


class StockContention(Exception):
    """Every decrement round lost to a concurrent write; stock is untouched."""


# -------------------------------
# Options
# -------------------------------

def assign_option_ids(options: List[ProductOption]) -> List[Dict[str, Any]]:
    """Dump options for storage, giving a fresh stable id to any that lack one."""
    docs = []
    for opt in options:
        doc = opt.model_dump()
        if not doc.get("option_id"):
            doc["option_id"] = str(ObjectId())
        docs.append(doc)
    return docs


def locate_option(
    product: Dict[str, Any], option_id: Optional[str], option_index: Optional[int]
) -> Tuple[Optional[int], Optional[Dict[str, Any]]]:
    """Find an option by stable id, falling back to its position for legacy lines."""
    options = product.get("options") or []
    if option_id:
        for pos, opt in enumerate(options):
            if opt.get("option_id") == option_id:
                return pos, opt
        return None, None
    if option_index is None or not isinstance(option_index, int):
        return None, None
    if 0 <= option_index < len(options):
        return option_index, options[option_index]
    return None, None


def unit_price(option: Dict[str, Any]) -> float:
    sale = option.get("sale_price")
    return float(sale if sale is not None else option.get("price", 0))


def find_product(db: Database, product_id: Any) -> Optional[Dict[str, Any]]:
    return db["product"].find_one({"_id": oid(product_id)})


def decrement_stock(
    db: Database,
    product_id: Any,
    option_id: Optional[str],
    option_index: Optional[int],
    quantity: int,
) -> Optional[int]:
    """Take ``quantity`` units off an option, never going below zero.

    Each round is a conditional update pinned to the option's position and id,
    so a concurrent edit of the option list makes the round miss instead of
    hitting the wrong option. Returns the new stock, or None when the product
    or option no longer exists. Raises StockContention when every round misses.
    """
    quantity = max(int(quantity or 0), 0)
    for _ in range(DECREMENT_ATTEMPTS):
        product = find_product(db, product_id)
        if not product:
            return None
        pos, option = locate_option(product, option_id, option_index)
        if option is None:
            return None

        path = f"options.{pos}.stock"
        pinned: Dict[str, Any] = {"_id": product["_id"]}
        if option.get("option_id"):
            pinned[f"options.{pos}.option_id"] = option["option_id"]

        current = int(option.get("stock") or 0)
        if current >= quantity:
            result = db["product"].update_one(
                {**pinned, path: current},
                {"$inc": {path: -quantity}, "$set": {"updated_at": utcnow()}},
            )
            new_stock = current - quantity
        else:
            result = db["product"].update_one(
                {**pinned, path: current},
                {"$set": {path: 0, "updated_at": utcnow()}},
            )
            new_stock = 0
            logger.warning(
                "Oversold product %s option %s: wanted %s, had %s", product["_id"], pos, quantity, current
            )
        if result.matched_count:
            return new_stock

    raise StockContention(
        f"Could not decrement stock for product {product_id} after {DECREMENT_ATTEMPTS} attempts"
    )


# -------------------------------
# Public catalog
# -------------------------------

@router.get("/api/categories")
def list_categories(db: Database = Depends(get_db)):
    return [serialize(c) for c in get_documents(db, "category", sort=[("created_at", -1)])]


@router.get("/api/products")
def list_products(category: Optional[str] = None, top: Optional[bool] = None, db: Database = Depends(get_db)):
    filter_query: Dict[str, Any] = {}
    if category:
        filter_query["category_id"] = category
    if top is not None:
        filter_query["is_top"] = top
    return [serialize(p) for p in get_documents(db, "product", filter_query, sort=[("created_at", -1)])]


@router.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = find_product(db, product_id)
    if not doc:
        raise NotFound("Product not found")
    return serialize(doc)


# -------------------------------
# Admin: categories
# -------------------------------

@router.post("/api/admin/categories", status_code=201)
def create_category(payload: Category, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    category_id = create_document(db, "category", payload)
    return serialize(db["category"].find_one({"_id": oid(category_id)}))


@router.patch("/api/admin/categories/{category_id}")
def update_category(
    category_id: str, payload: Category, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)
):
    result = db["category"].update_one(
        {"_id": oid(category_id)}, {"$set": {"name": payload.name, "updated_at": utcnow()}}
    )
    if result.matched_count == 0:
        raise NotFound("Category not found")
    return serialize(db["category"].find_one({"_id": oid(category_id)}))


@router.delete("/api/admin/categories/{category_id}")
def delete_category(category_id: str, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["category"].delete_one({"_id": oid(category_id)})
    if result.deleted_count == 0:
        raise NotFound("Category not found")
    return {"message": "Deleted"}


# -------------------------------
# Admin: products
# -------------------------------

def _check_category(db: Database, category_id: str):
    if not db["category"].find_one({"_id": oid(category_id)}):
        raise ValidationError("Category does not exist")


@router.get("/api/admin/products")
def admin_list_products(_: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    return [serialize(p) for p in get_documents(db, "product", sort=[("created_at", -1)])]


@router.post("/api/admin/products", status_code=201)
def create_product(payload: Product, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    _check_category(db, payload.category_id)
    data = payload.model_dump()
    data["options"] = assign_option_ids(payload.options)
    product_id = create_document(db, "product", data)
    logger.info("Created product %s with %s options", product_id, len(data["options"]))
    return serialize(find_product(db, product_id))


@router.patch("/api/admin/products/{product_id}")
def update_product(
    product_id: str, payload: ProductUpdate, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)
):
    changes = payload.model_dump(exclude_unset=True, exclude={"options"})
    if payload.category_id is not None:
        _check_category(db, payload.category_id)
    if payload.options is not None:
        if not payload.options:
            raise ValidationError("A product needs at least one option")
        changes["options"] = assign_option_ids(payload.options)
    changes["updated_at"] = utcnow()

    result = db["product"].update_one({"_id": oid(product_id)}, {"$set": changes})
    if result.matched_count == 0:
        raise NotFound("Product not found")
    return serialize(find_product(db, product_id))


@router.delete("/api/admin/products/{product_id}")
def delete_product(product_id: str, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    result = db["product"].delete_one({"_id": oid(product_id)})
    if result.deleted_count == 0:
        raise NotFound("Product not found")
    return {"message": "Deleted"}
