"""
Stripe payments

Payment intents and hosted checkout sessions are created for an existing
order; the amount always comes from the stored order, never from the
client. Saved cards hang off a Stripe customer created on first use.
"""

import logging
from contextlib import contextmanager
from typing import Literal, Optional

import stripe
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo.database import Database

from config import settings
from database import get_db, utcnow
from errors import Conflict, NotFound, PaymentProviderError, PaymentsNotConfigured
from orders import get_order_or_404
from schemas import REVENUE_PAYMENT_STATUSES, Refund
from security import Principal, ensure_owner_or_admin, load_active_user, require_admin, require_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

PAYABLE_STATUSES = ("pending", "payment_failed")


class OrderPaymentRequest(BaseModel):
    order_id: str = Field(..., min_length=1)


class CheckoutRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PaymentMethodAdd(BaseModel):
    payment_method_id: str = Field(..., min_length=1)
    set_as_default: bool = False


class RefundRequest(BaseModel):
    amount_cents: Optional[int] = Field(None, gt=0, description="Defaults to the refundable remainder")
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = None


def configure_stripe() -> None:
    if not settings.stripe_secret_key:
        raise PaymentsNotConfigured()
    stripe.api_key = settings.stripe_secret_key


@contextmanager
def stripe_errors(action: str):
    try:
        yield
    except stripe.StripeError as exc:
        logger.error("Stripe call failed while trying to %s: %s", action, exc)
        raise PaymentProviderError(getattr(exc, "user_message", None) or str(exc))


def payable_order(db: Database, principal: Principal, order_id: str) -> dict:
    order = get_order_or_404(db, order_id)
    ensure_owner_or_admin(principal, order["user_id"])
    if order.get("payment_status") == "paid" or order["status"] not in PAYABLE_STATUSES:
        raise Conflict("Order is not awaiting payment", code="ORDER_NOT_PAYABLE")
    return order


def _metadata(order: dict) -> dict:
    return {"orderId": str(order["_id"]), "userId": order["user_id"], "orderNumber": order["order_number"]}


def ensure_customer(db: Database, user: dict) -> str:
    if user.get("stripe_customer_id"):
        return user["stripe_customer_id"]
    with stripe_errors("create customer"):
        customer = stripe.Customer.create(
            email=user["email"],
            name=user.get("name"),
            metadata={"userId": str(user["_id"])},
        )
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"stripe_customer_id": customer.id, "updated_at": utcnow()}})
    return customer.id


def _owned_method(customer_id: Optional[str], method_id: str):
    with stripe_errors("retrieve payment method"):
        method = stripe.PaymentMethod.retrieve(method_id)
    if not customer_id or getattr(method, "customer", None) != customer_id:
        raise NotFound("Payment method", method_id)
    return method


@router.post("/create-intent")
def create_payment_intent(
    payload: OrderPaymentRequest,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    order = payable_order(db, principal, payload.order_id)
    user = load_active_user(db, principal.id)
    params = {
        "amount": order["total_cents"],
        "currency": order.get("currency", settings.currency),
        "metadata": _metadata(order),
        "automatic_payment_methods": {"enabled": True},
    }
    if user.get("stripe_customer_id"):
        params["customer"] = user["stripe_customer_id"]
    with stripe_errors("create payment intent"):
        intent = stripe.PaymentIntent.create(**params)

    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"payment_intent_id": intent.id, "updated_at": utcnow()}},
    )
    logger.info("Payment intent %s created for order %s", intent.id, order["order_number"])
    return {
        "success": True,
        "data": {"clientSecret": intent.client_secret, "paymentIntentId": intent.id},
    }


@router.post("/create-checkout-session")
def create_checkout_session(
    payload: CheckoutRequest,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    order = payable_order(db, principal, payload.order_id)
    currency = order.get("currency", settings.currency)

    line_items = []
    for item in order["items"]:
        product_data = {"name": item["name"]}
        if item.get("image"):
            product_data["images"] = [item["image"]]
        line_items.append({
            "quantity": item["quantity"],
            "price_data": {"currency": currency, "unit_amount": item["price_cents"], "product_data": product_data},
        })
    for label, amount in (("Tax", order.get("tax_cents", 0)), ("Shipping", order.get("shipping_cents", 0))):
        if amount > 0:
            line_items.append({
                "quantity": 1,
                "price_data": {"currency": currency, "unit_amount": amount, "product_data": {"name": label}},
            })

    order_id = str(order["_id"])
    with stripe_errors("create checkout session"):
        session = stripe.checkout.Session.create(
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            customer_email=principal.email,
            metadata=_metadata(order),
            payment_intent_data={"metadata": _metadata(order)},
            success_url=payload.success_url
            or f"{settings.frontend_url}/orders/{order_id}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=payload.cancel_url or f"{settings.frontend_url}/cart",
        )

    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": {"stripe_session_id": session.id, "updated_at": utcnow()}},
    )
    logger.info("Checkout session %s created for order %s", session.id, order["order_number"])
    return {"success": True, "data": {"id": session.id, "url": session.url}}


@router.get("/session/{session_id}")
def get_session_status(
    session_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    order = db["order"].find_one({"stripe_session_id": session_id})
    if not order:
        raise NotFound("Checkout session", session_id)
    ensure_owner_or_admin(principal, order["user_id"])
    with stripe_errors("retrieve checkout session"):
        session = stripe.checkout.Session.retrieve(session_id)
    return {
        "success": True,
        "data": {
            "id": session.id,
            "payment_status": session.payment_status,
            "status": session.status,
            "amount_total": session.amount_total,
            "currency": session.currency,
            "order_id": str(order["_id"]),
            "order_status": order["status"],
        },
    }


@router.get("/methods")
def list_payment_methods(principal: Principal = Depends(require_user), db: Database = Depends(get_db)):
    configure_stripe()
    user = load_active_user(db, principal.id)
    if not user.get("stripe_customer_id"):
        return {"success": True, "data": []}
    with stripe_errors("list payment methods"):
        methods = stripe.PaymentMethod.list(customer=user["stripe_customer_id"], type="card")
    data = [
        {
            "id": m.id,
            "brand": m.card.brand,
            "last4": m.card.last4,
            "exp_month": m.card.exp_month,
            "exp_year": m.card.exp_year,
            "is_default": m.id == user.get("default_payment_method"),
        }
        for m in methods.data
    ]
    return {"success": True, "data": data}


@router.post("/methods", status_code=201)
def add_payment_method(
    payload: PaymentMethodAdd,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    user = load_active_user(db, principal.id)
    customer_id = ensure_customer(db, user)
    with stripe_errors("attach payment method"):
        stripe.PaymentMethod.attach(payload.payment_method_id, customer=customer_id)
        make_default = payload.set_as_default or not user.get("default_payment_method")
        if make_default:
            stripe.Customer.modify(
                customer_id, invoice_settings={"default_payment_method": payload.payment_method_id}
            )
    if make_default:
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"default_payment_method": payload.payment_method_id, "updated_at": utcnow()}},
        )
    return {"success": True, "message": "Payment method added successfully"}


@router.delete("/methods/{method_id}")
def remove_payment_method(
    method_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    user = load_active_user(db, principal.id)
    _owned_method(user.get("stripe_customer_id"), method_id)
    with stripe_errors("detach payment method"):
        stripe.PaymentMethod.detach(method_id)
    if user.get("default_payment_method") == method_id:
        db["user"].update_one(
            {"_id": user["_id"]},
            {"$set": {"default_payment_method": None, "updated_at": utcnow()}},
        )
    return {"success": True, "message": "Payment method removed successfully"}


@router.put("/methods/{method_id}/default")
def set_default_payment_method(
    method_id: str,
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    user = load_active_user(db, principal.id)
    customer_id = user.get("stripe_customer_id")
    _owned_method(customer_id, method_id)
    with stripe_errors("set default payment method"):
        stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": method_id})
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"default_payment_method": method_id, "updated_at": utcnow()}},
    )
    return {"success": True, "message": "Default payment method updated successfully"}


@router.get("/history")
def payment_history(
    limit: int = Query(10, ge=1, le=100),
    principal: Principal = Depends(require_user),
    db: Database = Depends(get_db),
):
    configure_stripe()
    user = load_active_user(db, principal.id)
    if not user.get("stripe_customer_id"):
        return {"success": True, "data": []}
    with stripe_errors("list payment intents"):
        intents = stripe.PaymentIntent.list(customer=user["stripe_customer_id"], limit=limit)
    data = [
        {
            "id": i.id,
            "amount_cents": i.amount,
            "currency": i.currency,
            "status": i.status,
            "created": i.created,
            "description": getattr(i, "description", None),
        }
        for i in intents.data
    ]
    return {"success": True, "data": data}


@router.post("/{order_id}/refund")
def refund_order(
    order_id: str,
    payload: RefundRequest,
    principal: Principal = Depends(require_admin),
    db: Database = Depends(get_db),
):
    """Ask Stripe to refund part or all of a paid order.

    The refund is recorded as pending; ``charge.refunded`` settles the
    order's refunded total once Stripe confirms it.
    """
    configure_stripe()
    order = get_order_or_404(db, order_id)
    if order.get("payment_status") not in REVENUE_PAYMENT_STATUSES or not order.get("payment_intent_id"):
        raise Conflict("Only paid orders can be refunded", code="ORDER_NOT_REFUNDABLE")

    pending = sum(r["amount_cents"] for r in order.get("refunds", []) if r.get("status") == "pending")
    refundable = order["total_cents"] - order.get("refunded_cents", 0) - pending
    amount = payload.amount_cents or refundable
    if amount <= 0 or amount > refundable:
        raise Conflict(f"Refund amount exceeds the refundable balance of {refundable}", code="REFUND_TOO_LARGE")

    params = {"payment_intent": order["payment_intent_id"], "amount": amount, "metadata": _metadata(order)}
    if payload.reason:
        params["reason"] = payload.reason
    with stripe_errors("create refund"):
        refund = stripe.Refund.create(**params)

    entry = Refund(
        amount_cents=amount,
        currency=order.get("currency", settings.currency),
        reason=payload.reason,
        stripe_refund_id=refund.id,
        processed_by=principal.id,
    )
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$push": {"refunds": entry.model_dump()}, "$set": {"updated_at": utcnow()}},
    )
    logger.info("Refund %s of %d requested for order %s", refund.id, amount, order["order_number"])
    return {"success": True, "message": "Refund requested", "data": entry.model_dump()}
