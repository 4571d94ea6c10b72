import logging
from typing import Any, Dict, List, NamedTuple, Optional

from fastapi import APIRouter, Depends
from pymongo.database import Database

from auth import RequestContext, require_user
from catalog import locate_option, unit_price
from database import get_db, oid, utcnow
from errors import InvalidOption, NotFound, ValidationError
from schemas import (
    NOTE_MAX_LENGTH,
    CartAddRequest,
    CartLineRequest,
    CartNoteRequest,
    CartUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class ResolvedCartLine(NamedTuple):
    item: Dict[str, Any]
    product: Optional[Dict[str, Any]]
    position: Optional[int]
    option: Optional[Dict[str, Any]]


def load_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise NotFound("User not found")
    return user


def resolve_cart(db: Database, user: Dict[str, Any]) -> List[ResolvedCartLine]:
    """Attach the current product and option to every cart line.

    Product and option are None when they have been removed since the line
    was added; callers decide whether that is an error.
    """
    cart = user.get("cart") or []
    product_ids = list({oid(i["product_id"]) for i in cart})
    products = {str(p["_id"]): p for p in db["product"].find({"_id": {"$in": product_ids}})}

    lines = []
    for item in cart:
        product = products.get(str(item["product_id"]))
        pos, option = (None, None)
        if product:
            pos, option = locate_option(product, item.get("option_id"), item.get("option_index"))
        lines.append(ResolvedCartLine(item, product, pos, option))
    return lines


def cart_to_dto(lines: List[ResolvedCartLine]) -> List[Dict[str, Any]]:
    return [
        {
            "product_id": str(line.product["_id"]),
            "product_name": line.product.get("name"),
            "option_id": line.option.get("option_id"),
            "option_index": line.position,
            "option_name": line.option.get("option_name"),
            "price": unit_price(line.option),
            "quantity": line.item["quantity"],
            "item_note": line.item.get("item_note", ""),
            "image": line.product.get("image"),
        }
        for line in lines
        if line.product and line.option
    ]


def _same_line(item: Dict[str, Any], product_id: str, option_id: Optional[str], option_index: Optional[int]) -> bool:
    if str(item["product_id"]) != product_id:
        return False
    if option_id and item.get("option_id"):
        return item["option_id"] == option_id
    return option_index is not None and item.get("option_index") == option_index


def _require_line_key(payload: CartLineRequest):
    if not payload.option_id and payload.option_index is None:
        raise ValidationError("product_id and option_id or option_index are required")


def _save_cart(db: Database, user: Dict[str, Any], cart: List[Dict[str, Any]]):
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"cart": cart, "updated_at": utcnow()}})
    user["cart"] = cart


def _find_line(cart: List[Dict[str, Any]], payload: CartLineRequest) -> Dict[str, Any]:
    for item in cart:
        if _same_line(item, payload.product_id, payload.option_id, payload.option_index):
            return item
    raise NotFound("Cart item not found")


# -------------------------------
# Cart operations
# -------------------------------

def get_cart(db: Database, ctx: RequestContext) -> List[Dict[str, Any]]:
    user = load_user(db, ctx.user_id)
    lines = resolve_cart(db, user)
    valid = [line for line in lines if line.product and line.option]
    if len(valid) != len(lines):
        logger.info("Pruned %s stale cart lines for user %s", len(lines) - len(valid), ctx.user_id)
        _save_cart(db, user, [line.item for line in valid])
    return cart_to_dto(valid)


def add_item(db: Database, ctx: RequestContext, payload: CartAddRequest) -> List[Dict[str, Any]]:
    _require_line_key(payload)
    product = db["product"].find_one({"_id": oid(payload.product_id)})
    if not product:
        raise NotFound("Product not found")
    pos, option = locate_option(product, payload.option_id, payload.option_index)
    if option is None:
        raise InvalidOption(f"Option does not exist on product {product.get('name')}")

    user = load_user(db, ctx.user_id)
    cart = list(user.get("cart") or [])
    option_id = option.get("option_id")
    for item in cart:
        if _same_line(item, payload.product_id, option_id, pos):
            item["quantity"] += payload.quantity
            break
    else:
        cart.append({
            "product_id": payload.product_id,
            "option_id": option_id,
            "option_index": pos,
            "quantity": payload.quantity,
            "item_note": "",
        })
    _save_cart(db, user, cart)
    return cart_to_dto(resolve_cart(db, user))


def update_quantity(db: Database, ctx: RequestContext, payload: CartUpdateRequest) -> List[Dict[str, Any]]:
    _require_line_key(payload)
    user = load_user(db, ctx.user_id)
    cart = list(user.get("cart") or [])
    line = _find_line(cart, payload)
    if payload.quantity <= 0:
        cart.remove(line)
    else:
        line["quantity"] = payload.quantity
    _save_cart(db, user, cart)
    return cart_to_dto(resolve_cart(db, user))


def set_note(db: Database, ctx: RequestContext, payload: CartNoteRequest) -> List[Dict[str, Any]]:
    _require_line_key(payload)
    user = load_user(db, ctx.user_id)
    cart = list(user.get("cart") or [])
    line = _find_line(cart, payload)
    line["item_note"] = str(payload.item_note or "").strip()[:NOTE_MAX_LENGTH]
    _save_cart(db, user, cart)
    return cart_to_dto(resolve_cart(db, user))


def remove_item(db: Database, ctx: RequestContext, payload: CartLineRequest) -> List[Dict[str, Any]]:
    _require_line_key(payload)
    user = load_user(db, ctx.user_id)
    cart = [
        item for item in (user.get("cart") or [])
        if not _same_line(item, payload.product_id, payload.option_id, payload.option_index)
    ]
    _save_cart(db, user, cart)
    return cart_to_dto(resolve_cart(db, user))


def clear_cart(db: Database, user_id: Any) -> bool:
    result = db["user"].update_one({"_id": oid(user_id)}, {"$set": {"cart": [], "updated_at": utcnow()}})
    return result.matched_count > 0


# -------------------------------
# Routes
# -------------------------------

@router.get("/api/cart")
def read_cart(ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    return get_cart(db, ctx)


@router.post("/api/cart/add")
def add_to_cart(payload: CartAddRequest, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    return {"message": "Added to cart", "cart": add_item(db, ctx, payload)}


@router.patch("/api/cart/update")
def update_cart(
    payload: CartUpdateRequest, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)
):
    return {"message": "Cart updated", "cart": update_quantity(db, ctx, payload)}


@router.patch("/api/cart/note")
def update_note(payload: CartNoteRequest, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    return {"message": "Note updated", "cart": set_note(db, ctx, payload)}


@router.delete("/api/cart/item")
def delete_item(payload: CartLineRequest, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    return {"message": "Cart item removed", "cart": remove_item(db, ctx, payload)}


@router.delete("/api/cart/clear")
def delete_cart(ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    if not clear_cart(db, ctx.user_id):
        raise NotFound("User not found")
    return {"message": "Cart cleared", "cart": []}
