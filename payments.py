"""
Payments (Tranzila direct)

Outbound: build the iframe URL the client embeds to pay for a pending order.
Inbound: browser returns, which only redirect, and the server-to-server
notification, which is the only thing allowed to move an order to paid or
failed. The gateway retries notifications it does not see acknowledged, so
that endpoint answers OK no matter what happens inside.
"""

import os
import logging
from datetime import datetime
from typing import Any, Dict, Optional
from urllib.parse import quote, urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, RedirectResponse
from pydantic import BaseModel
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import RequestContext, require_admin, require_user
from cart import clear_cart
from catalog import decrement_stock
from database import get_db, oid, utcnow
from errors import InvalidState, NotFound, ValidationError
from orders import order_to_dto
from schemas import PaymentStartRequest

logger = logging.getLogger(__name__)

CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:8080")
BACKEND_URL = os.getenv("BACKEND_URL", "http://localhost:5000")

TRANZILA_SUPPLIER = os.getenv("TRANZILA_SUPPLIER", "tranzilatst")
TRANZILA_LANG = os.getenv("TRANZILA_LANG", "he")
TRANZILA_CURRENCY = os.getenv("TRANZILA_CURRENCY", "1")
TRANZILA_DIRECT_MODE = os.getenv("TRANZILA_DIRECT_MODE", "iframe")  # iframe | iframenew

APPROVED_CODES = {"000", "0"}

# Field names differ between terminal configurations
ORDER_ID_ALIASES = ("orderid", "myorder", "OrderId", "order_id")
RESPONSE_ALIASES = ("Response", "response", "ResponseCode")
REFERENCE_ALIASES = ("Tempref", "tempref", "ConfirmationCode")
RETURN_ORDER_ID_ALIASES = ("orderId", "order_id", "orderid")

PAID_STATES = ("paid", "shipped", "completed")

router = APIRouter()


# -------------------------------
# Outbound
# -------------------------------

def money2(value: Any) -> str:
    return f"{float(value or 0):.2f}"


def direct_base_url(supplier: str) -> str:
    page = "iframenew.php" if TRANZILA_DIRECT_MODE == "iframenew" else "iframe.php"
    return f"https://direct.tranzila.com/{quote(supplier, safe='')}/{page}"


def build_payment_url(order: Dict[str, Any], supplier: Optional[str] = None) -> str:
    order_id = str(order["_id"])
    details = order.get("customer_details") or {}
    address = f"{details.get('street', '')} {details.get('house_number', '')}".strip()

    params = {
        "sum": money2(order.get("total_to_pay")),
        "currency": str(TRANZILA_CURRENCY),
        "orderid": order_id,
        "lang": TRANZILA_LANG,
        "success_url_address": f"{BACKEND_URL}/api/payments/return/success?orderId={order_id}",
        "fail_url_address": f"{BACKEND_URL}/api/payments/return/fail?orderId={order_id}",
        "notify_url_address": f"{BACKEND_URL}/api/payments/ipn/tranzila",
        "contact": details.get("full_name", ""),
        "email": details.get("email", ""),
        "phone": details.get("phone", ""),
        "city": details.get("city", ""),
        "address": address,
        "remarks": details.get("notes", ""),
        "pdesc": "Shop order",
        "cred_type": "1",
    }
    return f"{direct_base_url((supplier or TRANZILA_SUPPLIER).strip())}?{urlencode(params)}"


def start_payment(db: Database, ctx: RequestContext, order_id: str, supplier: Optional[str] = None) -> str:
    order = db["order"].find_one({"_id": oid(order_id), "user_id": ctx.user_id})
    if not order:
        raise NotFound("Order not found")
    if order["status"] != "pending":
        raise InvalidState("Order is not pending payment")
    return build_payment_url(order, supplier)


# -------------------------------
# Inbound payload
# -------------------------------

class GatewayNotification(BaseModel):
    order_id: str
    response_code: str = ""
    reference: str = ""
    raw: Dict[str, Any] = {}

    @property
    def approved(self) -> bool:
        return self.response_code in APPROVED_CODES


def _first(payload: Dict[str, Any], aliases) -> str:
    for name in aliases:
        value = payload.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def parse_notification(payload: Dict[str, Any]) -> Optional[GatewayNotification]:
    """Map a raw notification onto GatewayNotification, or None if unrecognized."""
    if not isinstance(payload, dict):
        return None
    order_id = _first(payload, ORDER_ID_ALIASES)
    if not order_id:
        return None
    return GatewayNotification(
        order_id=order_id,
        response_code=_first(payload, RESPONSE_ALIASES),
        reference=_first(payload, REFERENCE_ALIASES),
        raw={str(k): str(v) for k, v in payload.items()},
    )


async def read_payload(request: Request) -> Dict[str, Any]:
    payload: Dict[str, Any] = dict(request.query_params)
    if request.method == "GET":
        return payload
    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            body = await request.json()
        except ValueError:
            logger.info("Unreadable JSON body on %s", request.url.path)
            return payload
        if isinstance(body, dict):
            payload.update(body)
    elif "form" in content_type:
        form = await request.form()
        payload.update({k: v for k, v in form.items() if isinstance(v, str)})
    return payload


# -------------------------------
# Reconciliation
# -------------------------------

def apply_stock_deduction(db: Database, order: Dict[str, Any]) -> int:
    """Take every line of a paid order off stock, once per line.

    A line is claimed on the order before its stock moves, so running this
    again (a retried notification that slipped through, or an admin rerun)
    skips lines already taken. A line whose decrement blows up is released
    and left for the next run. Returns how many lines were applied now.
    """
    applied = 0
    for index, item in enumerate(order.get("items", [])):
        claim = db["order"].update_one(
            {"_id": order["_id"], "stock_deducted": {"$ne": index}},
            {"$addToSet": {"stock_deducted": index}},
        )
        if claim.modified_count == 0:
            continue
        try:
            new_stock = decrement_stock(
                db, item["product_id"], item.get("option_id"), item.get("option_index"), item["quantity"]
            )
        except Exception:
            logger.exception("Stock decrement failed for order %s item %s", order["_id"], index)
            db["order"].update_one({"_id": order["_id"]}, {"$pull": {"stock_deducted": index}})
            continue
        if new_stock is None:
            logger.warning(
                "Order %s item %s: product %s or its option is gone, stock untouched",
                order["_id"], index, item["product_id"],
            )
        applied += 1
    return applied


def _gateway_record(note: GatewayNotification, now: datetime) -> Dict[str, Any]:
    return {"response": note.response_code, "tempref": note.reference, "payload": note.raw, "at": now}


def reconcile_notification(db: Database, payload: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """Apply one gateway notification. Returns what happened, for logs and tests.

    Outcomes: ``ignored``, ``duplicate``, ``failed`` or ``paid``. Transitions
    are conditional updates on the current status, so two copies of the same
    notification racing each other cannot both win.
    """
    now = now or utcnow()
    note = parse_notification(payload)
    if note is None:
        logger.info("Notification without order id, ignoring")
        return "ignored"
    try:
        order_oid = oid(note.order_id)
    except ValidationError:
        logger.info("Notification for malformed order id %r, ignoring", note.order_id)
        return "ignored"

    order = db["order"].find_one({"_id": order_oid}, {"status": 1})
    if not order:
        logger.info("Notification for unknown order %s, ignoring", note.order_id)
        return "ignored"
    if order["status"] in PAID_STATES:
        logger.info("Order %s already %s, duplicate notification", note.order_id, order["status"])
        return "duplicate"

    record = _gateway_record(note, now)

    if not note.approved:
        updated = db["order"].find_one_and_update(
            {"_id": order_oid, "status": "pending"},
            {"$set": {"status": "failed", "failed_at": now, "gateway_payload": record, "updated_at": now}},
        )
        if updated is None:
            db["order"].update_one({"_id": order_oid}, {"$set": {"gateway_payload": record, "updated_at": now}})
            logger.info("Declined notification for order %s in state %s, recorded only", note.order_id, order["status"])
            return "ignored"
        logger.info("Order %s failed, gateway response %r", note.order_id, note.response_code)
        return "failed"

    # a decline can be followed by an approval when the customer retries
    paid = db["order"].find_one_and_update(
        {"_id": order_oid, "status": {"$in": ["pending", "failed"]}},
        {"$set": {"status": "paid", "paid_at": now, "gateway_payload": record, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if paid is None:
        current = db["order"].find_one({"_id": order_oid}, {"status": 1})
        status = current["status"] if current else None
        if status == "canceled":
            # no refund is issued here; the payment is kept on record for a manual refund
            db["order"].update_one({"_id": order_oid}, {"$set": {"gateway_payload": record, "updated_at": now}})
            logger.warning("Approved payment for canceled order %s, left canceled", note.order_id)
            return "ignored"
        logger.info("Order %s already %s, duplicate notification", note.order_id, status)
        return "duplicate"

    applied = apply_stock_deduction(db, paid)
    clear_cart(db, paid["user_id"])
    logger.info("Order %s paid, %s lines taken from stock", note.order_id, applied)
    return "paid"


def reconcile_stock(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": oid(order_id)})
    if not order:
        raise NotFound("Order not found")
    if order["status"] not in PAID_STATES:
        raise InvalidState("Only paid orders take stock")
    applied = apply_stock_deduction(db, order)
    logger.info("Stock rerun for order %s applied %s lines", order_id, applied)
    return db["order"].find_one({"_id": order["_id"]})


# -------------------------------
# Routes
# -------------------------------

def _return_redirect(payload: Dict[str, Any], page: str) -> RedirectResponse:
    order_id = _first(payload, RETURN_ORDER_ID_ALIASES)
    target = f"{CLIENT_URL}/{page}"
    if order_id:
        target += "?" + urlencode({"orderId": order_id})
    return RedirectResponse(target, status_code=302)


@router.post("/api/payments/start")
def payment_start(
    payload: PaymentStartRequest, ctx: RequestContext = Depends(require_user), db: Database = Depends(get_db)
):
    return {"iframe_url": start_payment(db, ctx, payload.order_id, payload.supplier)}


@router.api_route("/api/payments/return/success", methods=["GET", "POST"])
async def return_success(request: Request):
    return _return_redirect(await read_payload(request), "payment-success")


@router.api_route("/api/payments/return/fail", methods=["GET", "POST"])
async def return_fail(request: Request):
    return _return_redirect(await read_payload(request), "payment-failed")


@router.api_route("/api/payments/ipn/tranzila", methods=["GET", "POST"])
async def tranzila_notify(request: Request, db: Database = Depends(get_db)):
    try:
        payload = await read_payload(request)
        await run_in_threadpool(reconcile_notification, db, payload)
    except Exception:
        # answering anything but OK makes the gateway resend forever
        logger.exception("Payment notification failed")
    return PlainTextResponse("OK")


@router.post("/api/admin/orders/{order_id}/reconcile-stock")
def admin_reconcile_stock(order_id: str, _: RequestContext = Depends(require_admin), db: Database = Depends(get_db)):
    return order_to_dto(reconcile_stock(db, order_id))
