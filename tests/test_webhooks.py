"""Tests for the Stripe webhook receiver."""

import json

import pytest

import webhooks
from conftest import get_order, place_order, signed_webhook


@pytest.fixture
def order(client, db, user, make_product):
    _, headers = user
    product_id = make_product(price_cents=4000, stock=5)
    return place_order(client, headers, [{"product_id": product_id, "quantity": 1}])


def succeeded(order_id, event_id="evt_paid_1", intent_id="pi_123"):
    return {
        "id": event_id,
        "type": "payment_intent.succeeded",
        "data": {"object": {"id": intent_id, "object": "payment_intent", "metadata": {"orderId": order_id}}},
    }


def refunded(event_id, amount_refunded, intent_id="pi_123"):
    return {
        "id": event_id,
        "type": "charge.refunded",
        "data": {
            "object": {
                "id": "ch_1",
                "object": "charge",
                "payment_intent": intent_id,
                "amount_refunded": amount_refunded,
                "currency": "usd",
            }
        },
    }


class TestSignature:
    def test_invalid_signature_changes_nothing(self, client, db, order):
        response = signed_webhook(client, succeeded(order["id"]), secret="whsec_wrong")
        assert response.status_code == 400
        stored = get_order(db, order["id"])
        assert stored["status"] == "pending"
        assert db["webhook_event"].count_documents({}) == 0

    def test_missing_signature(self, client, db, order):
        response = client.post("/api/payments/webhook", content=json.dumps(succeeded(order["id"])))
        assert response.status_code == 400
        assert get_order(db, order["id"])["payment_status"] == "pending"

    def test_tampered_payload(self, client, db, order, monkeypatch):
        """A signature for one body does not validate another."""
        event = succeeded(order["id"])
        good = signed_webhook(client, {"id": "evt_other", "type": "ping", "data": {"object": {}}})
        assert good.status_code == 200
        header = f"t=1,v1={'0' * 64}"
        response = client.post(
            "/api/payments/webhook",
            content=json.dumps(event),
            headers={"Stripe-Signature": header},
        )
        assert response.status_code == 400
        assert get_order(db, order["id"])["status"] == "pending"

    def test_undecodable_body(self, client, db, order):
        response = client.post(
            "/api/payments/webhook",
            content=b"\xff\xfe{}",
            headers={"Stripe-Signature": "t=1,v1=abc"},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_PAYLOAD"
        assert db["webhook_event"].count_documents({}) == 0


class TestPaymentSucceeded:
    def test_confirms_order_with_one_timeline_entry(self, client, db, order):
        response = signed_webhook(client, succeeded(order["id"]))
        assert response.status_code == 200
        assert response.json() == {"received": True}
        stored = get_order(db, order["id"])
        assert stored["status"] == "confirmed"
        assert stored["payment_status"] == "paid"
        assert stored["payment_intent_id"] == "pi_123"
        assert stored["paid_at"] is not None
        assert len(stored["timeline"]) == len(order["timeline"]) + 1
        assert db["webhook_event"].find_one({"event_id": "evt_paid_1"})["status"] == "processed"

    def test_redelivery_is_not_reapplied(self, client, db, order):
        signed_webhook(client, succeeded(order["id"]))
        response = signed_webhook(client, succeeded(order["id"]))
        assert response.status_code == 200
        assert len(get_order(db, order["id"])["timeline"]) == len(order["timeline"]) + 1

    def test_second_success_event_for_paid_order(self, client, db, order):
        signed_webhook(client, succeeded(order["id"], event_id="evt_a"))
        signed_webhook(client, succeeded(order["id"], event_id="evt_b"))
        assert len(get_order(db, order["id"])["timeline"]) == len(order["timeline"]) + 1

    def test_checkout_completed(self, client, db, order):
        event = {
            "id": "evt_cs_1",
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_1",
                    "payment_status": "paid",
                    "payment_intent": "pi_from_session",
                    "metadata": {"orderId": order["id"]},
                }
            },
        }
        assert signed_webhook(client, event).status_code == 200
        stored = get_order(db, order["id"])
        assert stored["payment_status"] == "paid"
        assert stored["payment_intent_id"] == "pi_from_session"

    def test_event_without_order_is_acknowledged(self, client, db):
        event = {"id": "evt_x", "type": "payment_intent.succeeded", "data": {"object": {"id": "pi_x", "metadata": {}}}}
        assert signed_webhook(client, event).status_code == 200


class TestPaymentFailed:
    def test_marks_payment_failed(self, client, db, order):
        event = {
            "id": "evt_fail_1",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_123",
                    "metadata": {"orderId": order["id"]},
                    "last_payment_error": {"message": "Your card was declined."},
                }
            },
        }
        assert signed_webhook(client, event).status_code == 200
        stored = get_order(db, order["id"])
        assert stored["status"] == "payment_failed"
        assert stored["payment_status"] == "failed"
        assert "declined" in stored["timeline"][-1]["note"]

    def test_late_failure_does_not_unpay(self, client, db, order):
        signed_webhook(client, succeeded(order["id"]))
        event = {
            "id": "evt_fail_2",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_123", "metadata": {"orderId": order["id"]}}},
        }
        signed_webhook(client, event)
        assert get_order(db, order["id"])["payment_status"] == "paid"


class TestRefunds:
    def test_partial_then_full_refund(self, client, db, order):
        signed_webhook(client, succeeded(order["id"]))
        total = order["total_cents"]

        signed_webhook(client, refunded("evt_r1", 1000))
        stored = get_order(db, order["id"])
        assert stored["refunded_cents"] == 1000
        assert stored["payment_status"] == "partially_refunded"

        # redelivery must not double count
        signed_webhook(client, refunded("evt_r1", 1000))
        assert get_order(db, order["id"])["refunded_cents"] == 1000

        signed_webhook(client, refunded("evt_r2", total))
        stored = get_order(db, order["id"])
        assert stored["refunded_cents"] == total
        assert stored["payment_status"] == "refunded"
        assert stored["status"] == "refunded"
        assert sum(r["amount_cents"] for r in stored["refunds"]) == total

    def test_refund_never_exceeds_total(self, client, db, order):
        signed_webhook(client, succeeded(order["id"]))
        signed_webhook(client, refunded("evt_r1", order["total_cents"] + 500))
        assert get_order(db, order["id"])["refunded_cents"] == order["total_cents"]


class TestOtherEvents:
    def test_subscription_event_ignored(self, client, db):
        event = {"id": "evt_sub", "type": "customer.subscription.created", "data": {"object": {"id": "sub_1"}}}
        assert signed_webhook(client, event).status_code == 200
        assert db["webhook_event"].find_one({"event_id": "evt_sub"})["status"] == "ignored"


class TestFailures:
    def test_unknown_order_fails_and_is_retried(self, client, db, admin, order, monkeypatch):
        _, admin_headers = admin
        event = succeeded("5f0000000000000000000000", event_id="evt_missing")
        response = signed_webhook(client, event)
        assert response.status_code == 500
        stored = db["webhook_event"].find_one({"event_id": "evt_missing"})
        assert stored["status"] == "failed"
        assert "not found" in stored["last_error"]

        # Stripe redelivers a failed event and it is attempted again
        assert signed_webhook(client, event).status_code == 500
        assert db["webhook_event"].find_one({"event_id": "evt_missing"})["attempts"] == 2

    def test_handler_error_then_admin_retry(self, client, db, admin, order, monkeypatch):
        _, admin_headers = admin

        def broken(database, event_id, obj):
            raise RuntimeError("database hiccup")

        monkeypatch.setitem(webhooks.HANDLERS, "payment_intent.succeeded", broken)
        assert signed_webhook(client, succeeded(order["id"])).status_code == 500
        assert get_order(db, order["id"])["payment_status"] == "pending"

        monkeypatch.setitem(webhooks.HANDLERS, "payment_intent.succeeded", webhooks.handle_payment_succeeded)
        response = client.post("/api/admin/webhooks/retry", headers=admin_headers)
        assert response.json()["data"] == {"processed": 1, "failed": 0}
        stored = get_order(db, order["id"])
        assert stored["payment_status"] == "paid"
        assert len(stored["timeline"]) == len(order["timeline"]) + 1
