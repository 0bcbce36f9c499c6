"""
Stripe webhook receiver

Every verified event is stored in ``webhook_event`` before it is applied.
An event is acknowledged only after its order update went through; if
applying it fails the event is marked ``failed`` and the endpoint answers
500 so Stripe delivers it again. Order updates are conditional on the
event id not yet being recorded on the order, so a redelivered event is
applied at most once.
"""

import json
import logging
from typing import Optional

import stripe
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import settings
from database import get_db, to_object_id, utcnow
from errors import PaymentsNotConfigured, ValidationFailed
from pricing import format_cents
from schemas import Refund, TimelineEntry, WebhookEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["webhooks"])

DONE_STATUSES = ("processed", "ignored")


class OrderLookupError(Exception):
    """The event names an order this store does not know about."""


def verify_event(payload: bytes, signature: Optional[str]) -> dict:
    """Check the Stripe-Signature header and return the decoded event."""
    if not settings.stripe_webhook_secret:
        raise PaymentsNotConfigured()
    if not signature:
        raise ValidationFailed("Missing Stripe-Signature header", code="INVALID_SIGNATURE")
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise ValidationFailed("Webhook payload is not valid UTF-8", code="INVALID_PAYLOAD")
    try:
        stripe.WebhookSignature.verify_header(
            text, signature, settings.stripe_webhook_secret, settings.stripe_webhook_tolerance
        )
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise ValidationFailed(f"Webhook Error: {exc}", code="INVALID_SIGNATURE")
    try:
        event = json.loads(text)
    except ValueError:
        raise ValidationFailed("Webhook payload is not valid JSON", code="INVALID_PAYLOAD")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValidationFailed("Webhook payload is not an event", code="INVALID_PAYLOAD")
    return event


def store_event(db: Database, event: dict) -> dict:
    record = WebhookEvent(event_id=event["id"], type=event["type"], payload=event)
    try:
        db["webhook_event"].insert_one(record.model_dump())
    except DuplicateKeyError:
        logger.info("Webhook event %s delivered again", event["id"])
    return db["webhook_event"].find_one({"event_id": event["id"]})


def _order_for(db: Database, obj: dict) -> Optional[dict]:
    order_id = (obj.get("metadata") or {}).get("orderId")
    if not order_id:
        return None
    order = db["order"].find_one({"_id": to_object_id(order_id, "order")})
    if not order:
        raise OrderLookupError(f"Order {order_id} not found")
    return order


def _mark_paid(db: Database, event_id: str, obj: dict, intent_id: Optional[str], note: str) -> None:
    order = _order_for(db, obj)
    if order is None:
        logger.info("Event %s carries no orderId, nothing to update", event_id)
        return
    now = utcnow()
    # a cancelled order keeps its status; the payment is still recorded
    status = "confirmed" if order["status"] in ("pending", "payment_failed", "confirmed") else order["status"]
    entry = TimelineEntry(status=status, note=note, updated_by="system")
    changes = {"status": status, "payment_status": "paid", "paid_at": now, "updated_at": now}
    if intent_id:
        changes["payment_intent_id"] = intent_id
    result = db["order"].update_one(
        {
            "_id": order["_id"],
            "payment_status": {"$in": ["pending", "failed"]},
            "webhook_events": {"$ne": event_id},
        },
        {"$set": changes, "$push": {"timeline": entry.model_dump()}, "$addToSet": {"webhook_events": event_id}},
    )
    if result.modified_count:
        logger.info("Order %s paid (%s)", order["order_number"], event_id)
    else:
        logger.info("Order %s already paid, %s not applied", order["order_number"], event_id)


def handle_payment_succeeded(db: Database, event_id: str, intent: dict) -> None:
    _mark_paid(db, event_id, intent, intent.get("id"), "Payment successful via Stripe")


def handle_checkout_completed(db: Database, event_id: str, session: dict) -> None:
    if session.get("payment_status") not in (None, "paid"):
        logger.info("Checkout session %s completed unpaid (%s)", session.get("id"), session.get("payment_status"))
        return
    _mark_paid(db, event_id, session, session.get("payment_intent"), "Checkout completed via Stripe")


def handle_payment_failed(db: Database, event_id: str, intent: dict) -> None:
    order = _order_for(db, intent)
    if order is None:
        return
    message = (intent.get("last_payment_error") or {}).get("message") or "Unknown error"
    entry = TimelineEntry(status="payment_failed", note=f"Payment failed: {message}", updated_by="system")
    result = db["order"].update_one(
        {
            "_id": order["_id"],
            "status": {"$in": ["pending", "payment_failed"]},
            "payment_status": {"$in": ["pending", "failed"]},
            "webhook_events": {"$ne": event_id},
        },
        {
            "$set": {
                "status": "payment_failed",
                "payment_status": "failed",
                "payment_intent_id": intent.get("id"),
                "updated_at": utcnow(),
            },
            "$push": {"timeline": entry.model_dump()},
            "$addToSet": {"webhook_events": event_id},
        },
    )
    if result.modified_count:
        logger.info("Order %s marked as payment failed", order["order_number"])


def handle_charge_refunded(db: Database, event_id: str, charge: dict) -> None:
    """Settle refunds from the charge's cumulative ``amount_refunded``.

    Pending refunds requested through the API are marked processed in the
    order they were requested; any remainder was issued elsewhere (the
    Stripe dashboard) and gets its own entry.
    """
    intent_id = charge.get("payment_intent")
    order = db["order"].find_one({"payment_intent_id": intent_id}) if intent_id else None
    if not order:
        logger.warning("Refund event %s matches no order (payment intent %s)", event_id, intent_id)
        return
    if event_id in order.get("webhook_events", []):
        return

    now = utcnow()
    previous = order.get("refunded_cents", 0)
    refunded = min(int(charge.get("amount_refunded", 0)), order["total_cents"])
    currency = charge.get("currency") or order.get("currency", settings.currency)

    remaining = refunded - previous
    refunds = []
    for entry in order.get("refunds", []):
        if entry.get("status") == "pending" and 0 < entry["amount_cents"] <= remaining:
            entry = {**entry, "status": "processed", "event_id": event_id, "processed_at": now}
            remaining -= entry["amount_cents"]
        refunds.append(entry)
    if remaining > 0:
        refunds.append(Refund(
            amount_cents=remaining,
            currency=currency,
            status="processed",
            event_id=event_id,
            processed_at=now,
        ).model_dump())

    fully = refunded >= order["total_cents"]
    changes = {
        "refunded_cents": refunded,
        "payment_status": "refunded" if fully else "partially_refunded",
        "refunds": refunds,
        "updated_at": now,
    }
    if fully:
        changes["status"] = "refunded"
    entry = TimelineEntry(
        status=changes.get("status", order["status"]),
        note=f"Refund processed: {format_cents(refunded, currency)}",
        updated_by="system",
    )
    result = db["order"].update_one(
        {"_id": order["_id"], "refunded_cents": previous, "webhook_events": {"$ne": event_id}},
        {"$set": changes, "$push": {"timeline": entry.model_dump()}, "$addToSet": {"webhook_events": event_id}},
    )
    if not result.modified_count:
        raise RuntimeError(f"Order {order['order_number']} changed while applying {event_id}")
    logger.info("Order %s refunded %s in total", order["order_number"], format_cents(refunded, currency))


HANDLERS = {
    "payment_intent.succeeded": handle_payment_succeeded,
    "checkout.session.completed": handle_checkout_completed,
    "payment_intent.payment_failed": handle_payment_failed,
    "charge.refunded": handle_charge_refunded,
}


def process_event(db: Database, record: dict) -> bool:
    """Apply a stored event. Returns False when applying it failed."""
    event = record["payload"]
    event_type = record["type"]
    db["webhook_event"].update_one({"_id": record["_id"]}, {"$inc": {"attempts": 1}})

    handler = HANDLERS.get(event_type)
    if handler is None:
        if event_type.startswith("customer.subscription."):
            obj = (event.get("data") or {}).get("object") or {}
            logger.info("Subscription event %s for %s ignored", event_type, obj.get("id"))
        else:
            logger.info("Unhandled event type: %s", event_type)
        db["webhook_event"].update_one(
            {"_id": record["_id"]},
            {"$set": {"status": "ignored", "processed_at": utcnow(), "last_error": None}},
        )
        return True

    try:
        handler(db, record["event_id"], (event.get("data") or {}).get("object") or {})
    except Exception as exc:
        logger.error("Error handling webhook event %s (%s)", record["event_id"], event_type, exc_info=True)
        db["webhook_event"].update_one(
            {"_id": record["_id"]},
            {"$set": {"status": "failed", "last_error": str(exc)[:500]}},
        )
        return False

    db["webhook_event"].update_one(
        {"_id": record["_id"]},
        {"$set": {"status": "processed", "processed_at": utcnow(), "last_error": None}},
    )
    return True


def retry_failed_events(db: Database, limit: int = 50) -> dict:
    results = {"processed": 0, "failed": 0}
    for record in db["webhook_event"].find({"status": "failed"}).sort("received_at", 1).limit(limit):
        if process_event(db, record):
            results["processed"] += 1
        else:
            results["failed"] += 1
    logger.info("Webhook retry: %s", results)
    return results


@router.post("/webhook")
async def stripe_webhook(request: Request, db: Database = Depends(get_db)):
    payload = await request.body()
    event = verify_event(payload, request.headers.get("stripe-signature"))
    record = store_event(db, event)
    if record["status"] in DONE_STATUSES:
        return {"received": True, "duplicate": True}
    if not process_event(db, record):
        return JSONResponse(status_code=500, content={"success": False, "message": "Webhook handler failed"})
    return {"received": True}
