"""Tests for profile, addresses, preferences and account deletion."""

from conftest import PASSWORD, place_order

ADDRESS = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address1": "1 Main St",
    "city": "London",
    "state": "LDN",
    "zip_code": "N1 1AA",
    "country": "GB",
}


def add_address(client, headers, **extra):
    response = client.post("/api/users/addresses", json={**ADDRESS, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


def defaults(addresses):
    return [a["id"] for a in addresses if a["is_default"]]


class TestProfile:
    def test_update_allow_listed_fields(self, client, db, user):
        _, headers = user
        response = client.put(
            "/api/users/profile",
            json={"name": "Renamed", "role": "admin", "email": "hijack@example.com"},
            headers=headers,
        )
        assert response.status_code == 200
        stored = db["user"].find_one({"email": "user1@example.com"})
        assert stored["name"] == "Renamed"
        assert stored["role"] == "user"


class TestAddresses:
    def test_first_address_becomes_default(self, client, user):
        _, headers = user
        addresses = add_address(client, headers)
        assert defaults(addresses) == [addresses[0]["id"]]

    def test_only_one_default(self, client, user):
        _, headers = user
        add_address(client, headers)
        addresses = add_address(client, headers, city="Paris", is_default=True)
        assert defaults(addresses) == [addresses[1]["id"]]

    def test_set_default(self, client, user):
        _, headers = user
        add_address(client, headers)
        addresses = add_address(client, headers, city="Paris")
        second = addresses[1]["id"]
        response = client.put(f"/api/users/addresses/{second}/default", headers=headers)
        assert defaults(response.json()["data"]) == [second]

    def test_deleting_default_promotes_another(self, client, user):
        _, headers = user
        first = add_address(client, headers)[0]["id"]
        add_address(client, headers, city="Paris")
        response = client.delete(f"/api/users/addresses/{first}", headers=headers)
        remaining = response.json()["data"]
        assert len(remaining) == 1
        assert remaining[0]["is_default"] is True

    def test_update_address(self, client, user):
        _, headers = user
        address_id = add_address(client, headers)[0]["id"]
        response = client.put(f"/api/users/addresses/{address_id}", json={"city": "Leeds"}, headers=headers)
        assert response.json()["data"][0]["city"] == "Leeds"

    def test_unknown_address(self, client, user):
        _, headers = user
        assert client.delete("/api/users/addresses/missing", headers=headers).status_code == 404


class TestPreferences:
    def test_partial_update_keeps_other_values(self, client, user):
        _, headers = user
        client.put("/api/users/preferences", json={"theme": "dark"}, headers=headers)
        data = client.put("/api/users/preferences", json={"language": "de"}, headers=headers).json()["data"]
        assert data["theme"] == "dark"
        assert data["language"] == "de"


class TestOrdersSummary:
    def test_counts_by_status(self, client, user, make_product):
        _, headers = user
        product_id = make_product(price_cents=4000)
        place_order(client, headers, [{"product_id": product_id, "quantity": 1}])
        order = place_order(client, headers, [{"product_id": product_id, "quantity": 1}])
        client.put(f"/api/orders/{order['id']}/cancel", json={}, headers=headers)
        data = client.get("/api/users/orders-summary", headers=headers).json()["data"]
        assert data["totalOrders"] == 2
        assert data["byStatus"]["pending"]["count"] == 1
        assert data["byStatus"]["cancelled"]["count"] == 1
        assert data["totalSpentCents"] == 0


class TestDeleteAccount:
    def test_blocked_by_active_orders(self, client, user, make_product):
        _, headers = user
        place_order(client, headers, [{"product_id": make_product(), "quantity": 1}])
        response = client.request("DELETE", "/api/users/account", json={"password": PASSWORD}, headers=headers)
        assert response.status_code == 400

    def test_wrong_password(self, client, user):
        _, headers = user
        response = client.request("DELETE", "/api/users/account", json={"password": "Wrong123"}, headers=headers)
        assert response.status_code == 400

    def test_soft_delete(self, client, db, user):
        _, headers = user
        response = client.request("DELETE", "/api/users/account", json={"password": PASSWORD}, headers=headers)
        assert response.status_code == 200
        stored = db["user"].find_one({"email": "user1@example.com"})
        assert stored["is_active"] is False
        assert stored["deleted_at"] is not None
        assert client.get("/api/users/profile", headers=headers).status_code == 401
