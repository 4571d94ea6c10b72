import os
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import RequestContext, require_admin, require_user
from cart import load_user, resolve_cart
from catalog import unit_price
from database import get_db, create_document, oid, as_utc, utcnow
from errors import Forbidden, InsufficientStock, InvalidOption, InvalidState, NotFound, ValidationError
from schemas import CheckoutRequest, CustomerDetails, Order, OrderItem, StatusUpdate

logger = logging.getLogger(__name__)

SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", 40))
CANCEL_WINDOW = timedelta(hours=float(os.getenv("CANCEL_WINDOW_HOURS", 2)))

# The server decides the fee; anything the client sends is ignored.
DELIVERY_FEES = {
    "pickup": 0.0,
    "shipping": SHIPPING_FEE,
}

# Admin fulfilment moves once an order is paid
FULFILMENT_TRANSITIONS = {
    "paid": {"shipped", "completed"},
    "shipped": {"completed"},
}

router = APIRouter()


def normalize_delivery_method(method: Optional[str]) -> str:
    return "shipping" if method == "shipping" else "pickup"


def validate_customer(request: CheckoutRequest, method: str):
    if not request.full_name.strip() or not request.phone.strip():
        raise ValidationError("Full name and phone are required")
    if method == "shipping":
        if not request.city.strip() or not request.street.strip() or not request.house_number.strip():
            raise ValidationError("Shipping requires an address (city, street, house number)")


def build_customer_details(request: CheckoutRequest, method: str, fee: float) -> CustomerDetails:
    shipping = method == "shipping"
    return CustomerDetails(
        full_name=request.full_name.strip(),
        phone=request.phone.strip(),
        email=str(request.email) if request.email else "",
        # pickup orders keep the address blank
        city=request.city.strip() if shipping else "",
        street=request.street.strip() if shipping else "",
        house_number=request.house_number.strip() if shipping else "",
        postal_code=request.postal_code.strip() if shipping else "",
        notes=request.notes,
        delivery_method=method,
        shipping_fee=fee,
    )


def order_to_dto(order: Dict[str, Any]) -> Dict[str, Any]:
    created_at = order.get("created_at")
    return {
        "id": str(order["_id"]),
        "date": as_utc(created_at).isoformat() if isinstance(created_at, datetime) else None,
        "items": [
            {
                "product_id": str(item["product_id"]),
                "product_name": item["product_name"],
                "option_id": item.get("option_id"),
                "option_index": item["option_index"],
                "option_name": item["option_name"],
                "price": item["price"],
                "quantity": item["quantity"],
                "image": item.get("image"),
                "item_note": item.get("item_note", ""),
                "item_image_url": item.get("item_image_url", ""),
                "item_image_public_id": item.get("item_image_public_id", ""),
            }
            for item in order.get("items", [])
        ],
        "total_without_tax": float(order.get("total_without_tax") or 0),
        "shipping_fee": float(order.get("shipping_fee") or 0),
        "total_to_pay": float(order.get("total_to_pay") or 0),
        "delivery_method": (order.get("customer_details") or {}).get("delivery_method", "pickup"),
        "status": order["status"],
        "customer_details": order.get("customer_details"),
    }


# -------------------------------
# Checkout
# -------------------------------

def create_order_from_cart(
    db: Database, ctx: RequestContext, request: CheckoutRequest, now: Optional[datetime] = None
) -> Dict[str, Any]:
    """Turn the caller's cart into a pending order.

    Prices are frozen at this moment and stock is only checked, not reserved:
    it is taken when the gateway confirms payment. The cart stays as it is so
    an abandoned payment can be retried.
    """
    method = normalize_delivery_method(request.delivery_method)
    fee = DELIVERY_FEES[method]
    validate_customer(request, method)

    user = load_user(db, ctx.user_id)
    lines = resolve_cart(db, user)
    if not lines:
        raise ValidationError("Cart is empty")

    for line in lines:
        if not line.product:
            raise NotFound("A product in the cart no longer exists")
        if line.option is None:
            raise InvalidOption(f"Option no longer exists on product {line.product.get('name')}")
        stock = int(line.option.get("stock") or 0)
        if stock < line.item["quantity"]:
            raise InsufficientStock(
                f"Not enough stock for {line.product.get('name')} - {line.option.get('option_name')}. "
                f"{stock} left."
            )

    meta = {(m.product_id, m.option_index): m for m in request.items_meta}

    items: List[OrderItem] = []
    for line in lines:
        product_id = str(line.product["_id"])
        m = meta.get((product_id, line.position))
        items.append(
            OrderItem(
                product_id=product_id,
                option_id=line.option.get("option_id"),
                option_index=line.position,
                product_name=line.product.get("name", ""),
                option_name=line.option.get("option_name", ""),
                price=unit_price(line.option),
                quantity=line.item["quantity"],
                image=line.product.get("image"),
                item_note=m.note.strip() if m else line.item.get("item_note", ""),
                item_image_url=m.image_url.strip() if m else "",
                item_image_public_id=m.public_id.strip() if m else "",
            )
        )

    total_without_tax = round(sum(i.price * i.quantity for i in items), 2)
    order = Order(
        user_id=ctx.user_id,
        customer_details=build_customer_details(request, method, fee),
        items=items,
        total_without_tax=total_without_tax,
        shipping_fee=fee,
        total_to_pay=round(total_without_tax + fee, 2),
    )
    data = order.model_dump()
    if now is not None:
        data["created_at"] = now
    order_id = create_document(db, "order", data)
    logger.info("Order %s created for user %s, total %.2f", order_id, ctx.user_id, order.total_to_pay)
    return db["order"].find_one({"_id": oid(order_id)})


# -------------------------------
# Cancel / list / fulfil
# -------------------------------

def cancel_order(db: Database, ctx: RequestContext, order_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != ctx.user_id:
        raise Forbidden("Not allowed")
    if order["status"] != "pending":
        raise InvalidState("Only pending orders can be canceled")

    now = now or utcnow()
    if now - as_utc(order["created_at"]) > CANCEL_WINDOW:
        raise InvalidState("Cancellation window expired (2 hours)")

    # a payment confirmation may have landed in the meantime
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": "pending"},
        {"$set": {"status": "canceled", "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidState("Only pending orders can be canceled")
    logger.info("Order %s canceled by its owner", order_id)
    return updated


def list_my_orders(db: Database, ctx: RequestContext) -> List[Dict[str, Any]]:
    cursor = db["order"].find({"user_id": ctx.user_id, "status": {"$nin": ["failed"]}}).sort("created_at", -1)
    return [order_to_dto(o) for o in cursor]


def list_all_orders(db: Database, status: Optional[str] = None) -> List[Dict[str, Any]]:
    filter_query: Dict[str, Any] = {"status": status} if status else {"status": {"$nin": ["failed"]}}
    return [order_to_dto(o) for o in db["order"].find(filter_query).sort("created_at", -1)]


def update_status(db: Database, order_id: str, status: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFound("Order not found")
    current = order["status"]
    if status not in FULFILMENT_TRANSITIONS.get(current, set()):
        raise InvalidState(f"Cannot move order from {current} to {status}")

    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current},
        {"$set": {"status": status, "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidState("Order changed while updating, try again")
    logger.info("Order %s moved %s -> %s", order_id, current, status)
    return updated


# -------------------------------
# Routes
# -------------------------------

@router.post("/api/orders/checkout")
def checkout(payload: CheckoutRequest, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    order = create_order_from_cart(db, ctx, payload)
    return {"message": "Order created (pending payment)", "order": order_to_dto(order)}


@router.patch("/api/orders/{order_id}/cancel")
def cancel(order_id: str, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    return {"message": "Order canceled", "order": order_to_dto(cancel_order(db, ctx, order_id))}


@router.get("/api/orders/my")
def my_orders(ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)):
    return list_my_orders(db, ctx)


@router.get("/api/admin/orders")
def admin_orders(
    status: Optional[str] = None, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)
):
    return list_all_orders(db, status)


@router.patch("/api/admin/orders/{order_id}/status")
def admin_update_status(
    order_id: str, payload: StatusUpdate, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)
):
    return order_to_dto(update_status(db, order_id, payload.status))
