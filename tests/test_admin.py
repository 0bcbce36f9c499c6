"""Tests for the admin endpoints."""

from conftest import place_order, signed_webhook


def pay(client, order, event_id):
    signed_webhook(
        client,
        {
            "id": event_id,
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": f"pi_{event_id}", "metadata": {"orderId": order["id"]}}},
        },
    )


class TestAccess:
    def test_non_admin_forbidden(self, client, user):
        _, headers = user
        assert client.get("/api/admin/dashboard", headers=headers).status_code == 403

    def test_anonymous_unauthorized(self, client, db):
        assert client.get("/api/admin/dashboard").status_code == 401


class TestDashboard:
    def test_revenue_counts_paid_orders_only(self, client, user, admin, make_product):
        _, headers = user
        _, admin_headers = admin
        product_id = make_product(price_cents=4000, stock=10, is_featured=True)
        paid = place_order(client, headers, [{"product_id": product_id, "quantity": 1}])
        place_order(client, headers, [{"product_id": product_id, "quantity": 1}])
        pay(client, paid, "evt_1")

        data = client.get("/api/admin/dashboard", headers=admin_headers).json()["data"]
        assert data["counts"]["orders"] == 2
        assert data["month"] == {"revenue_cents": paid["total_cents"], "orders": 1}
        assert data["orderStatusDistribution"] == {"confirmed": 1, "pending": 1}
        assert data["lowStockProducts"][0]["stock"] == 8
        assert len(data["recentOrders"]) == 2

    def test_analytics(self, client, user, admin, make_product):
        _, headers = user
        _, admin_headers = admin
        order = place_order(client, headers, [{"product_id": make_product(price_cents=4000), "quantity": 2}])
        pay(client, order, "evt_2")
        data = client.get("/api/admin/analytics", params={"period": "7d"}, headers=admin_headers).json()["data"]
        assert sum(d["orders"] for d in data["orderTrends"]) == 1
        assert data["revenueByCategory"][0]["category"] == "Gear"
        assert data["revenueByCategory"][0]["revenue_cents"] == 8000
        assert data["productPerformance"][0]["sold"] == 2

    def test_analytics_revenue_is_net_of_refunds(self, client, user, admin, make_product):
        _, headers = user
        _, admin_headers = admin
        order = place_order(client, headers, [{"product_id": make_product(price_cents=4000), "quantity": 2}])
        assert order["total_cents"] == 9800
        pay(client, order, "evt_3")
        signed_webhook(
            client,
            {
                "id": "evt_3_refund",
                "type": "charge.refunded",
                "data": {"object": {"id": "ch_3", "payment_intent": "pi_evt_3", "amount_refunded": 4900}},
            },
        )

        data = client.get("/api/admin/analytics", params={"period": "7d"}, headers=admin_headers).json()["data"]
        assert sum(d["revenue_cents"] for d in data["orderTrends"]) == 4900
        assert data["revenueByCategory"][0]["revenue_cents"] == 4000
        dashboard = client.get("/api/admin/dashboard", headers=admin_headers).json()["data"]
        assert dashboard["month"]["revenue_cents"] == 4900

    def test_notifications(self, client, user, admin, make_product):
        _, headers = user
        _, admin_headers = admin
        place_order(client, headers, [{"product_id": make_product(stock=3), "quantity": 1}])
        types = [n["type"] for n in client.get("/api/admin/notifications", headers=admin_headers).json()["data"]]
        assert types == ["low_stock", "pending_orders", "new_users"]


class TestUserManagement:
    def test_list_and_search(self, client, make_user, admin):
        _, admin_headers = admin
        make_user(name="Grace Hopper", email="grace@example.com")
        body = client.get("/api/admin/users", params={"search": "grace"}, headers=admin_headers).json()
        assert [u["email"] for u in body["data"]] == ["grace@example.com"]
        assert "password_hash" not in body["data"][0]

    def test_change_role(self, client, db, user, admin):
        user_id, _ = user
        _, admin_headers = admin
        response = client.put(f"/api/admin/users/{user_id}/role", json={"role": "admin"}, headers=admin_headers)
        assert response.status_code == 200
        assert db["user"].find_one({"email": "user1@example.com"})["role"] == "admin"

    def test_cannot_change_own_role(self, client, admin):
        admin_id, admin_headers = admin
        response = client.put(f"/api/admin/users/{admin_id}/role", json={"role": "user"}, headers=admin_headers)
        assert response.status_code == 400

    def test_cannot_delete_self(self, client, admin):
        admin_id, admin_headers = admin
        assert client.delete(f"/api/admin/users/{admin_id}", headers=admin_headers).status_code == 400

    def test_cannot_delete_user_with_active_orders(self, client, user, admin, make_product):
        user_id, headers = user
        _, admin_headers = admin
        place_order(client, headers, [{"product_id": make_product(), "quantity": 1}])
        assert client.delete(f"/api/admin/users/{user_id}", headers=admin_headers).status_code == 400

    def test_delete_user(self, client, db, user, admin):
        user_id, headers = user
        _, admin_headers = admin
        client.get("/api/cart", headers=headers)
        assert client.delete(f"/api/admin/users/{user_id}", headers=admin_headers).status_code == 200
        assert db["user"].count_documents({"email": "user1@example.com"}) == 0
        assert db["cart"].count_documents({"user_id": user_id}) == 0


class TestSettings:
    def test_settings_persist_allow_listed_fields(self, client, db, admin):
        _, admin_headers = admin
        response = client.put(
            "/api/admin/settings",
            json={"store_name": "Corner Shop", "tax_rate_bps": 0},
            headers=admin_headers,
        )
        assert response.status_code == 200
        stored = db["setting"].find_one({"_id": "store"})
        assert stored["store_name"] == "Corner Shop"
        assert "tax_rate_bps" not in stored
        assert client.get("/api/admin/settings", headers=admin_headers).json()["data"]["store_name"] == "Corner Shop"


class TestSeed:
    def test_seed_requires_admin(self, client, db, user):
        _, headers = user
        assert client.post("/api/seed").status_code == 401
        assert client.post("/api/seed", headers=headers).status_code == 403
        assert db["product"].count_documents({}) == 0

    def test_seed_loads_catalog_once(self, client, db, admin):
        _, admin_headers = admin
        assert client.post("/api/seed", headers=admin_headers).status_code == 200
        seeded = db["product"].count_documents({})
        assert seeded > 0
        again = client.post("/api/seed", headers=admin_headers).json()
        assert again["message"] == "Catalog already present, nothing seeded"
        assert db["product"].count_documents({}) == seeded
