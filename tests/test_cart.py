"""Tests for the cart and wishlist endpoints."""

from bson import ObjectId


def add(client, headers, product_id, quantity=1, variant_id=None):
    body = {"product_id": product_id, "quantity": quantity}
    if variant_id:
        body["variant_id"] = variant_id
    return client.post("/api/cart", json=body, headers=headers)


class TestCart:
    def test_get_creates_empty_cart(self, client, db, user):
        user_id, headers = user
        response = client.get("/api/cart", headers=headers)
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["items"] == []
        assert data["totals"]["total_cents"] == 1000
        assert db["cart"].count_documents({"user_id": user_id}) == 1

    def test_add_merges_same_product(self, client, user, make_product):
        _, headers = user
        product_id = make_product(stock=5)
        add(client, headers, product_id, 2)
        data = add(client, headers, product_id, 1).json()["data"]
        assert data["itemCount"] == 1
        assert data["items"][0]["quantity"] == 3

    def test_totals_use_shared_pricing(self, client, user, make_product):
        _, headers = user
        add(client, headers, make_product(name="A", price_cents=6000, stock=5))
        data = add(client, headers, make_product(name="B", price_cents=5000, stock=5)).json()["data"]
        assert data["totals"]["subtotal_cents"] == 11000
        assert data["totals"]["total_cents"] == 12100

    def test_unknown_product(self, client, user):
        _, headers = user
        assert add(client, headers, str(ObjectId())).status_code == 404

    def test_quantity_beyond_stock(self, client, user, make_product):
        _, headers = user
        product_id = make_product(stock=2)
        response = add(client, headers, product_id, 3)
        assert response.status_code == 400
        assert response.json()["code"] == "INSUFFICIENT_STOCK"

    def test_merge_beyond_stock(self, client, user, make_product):
        _, headers = user
        product_id = make_product(stock=2)
        add(client, headers, product_id, 2)
        assert add(client, headers, product_id, 1).status_code == 400

    def test_read_clamps_to_live_stock(self, client, db, user, make_product):
        _, headers = user
        product_id = make_product(stock=5)
        add(client, headers, product_id, 4)
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"stock": 2}})
        data = client.get("/api/cart", headers=headers).json()["data"]
        assert data["items"][0]["quantity"] == 2
        assert data["adjustments"][0]["action"] == "clamped"
        # the clamp is persisted, so the next read has nothing to adjust
        assert client.get("/api/cart", headers=headers).json()["data"]["adjustments"] == []

    def test_read_drops_sold_out_lines(self, client, db, user, make_product):
        _, headers = user
        product_id = make_product(stock=5)
        add(client, headers, product_id, 1)
        db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": {"stock": 0}})
        data = client.get("/api/cart", headers=headers).json()["data"]
        assert data["items"] == []
        assert data["adjustments"][0]["action"] == "removed"

    def test_update_to_zero_removes(self, client, user, make_product):
        _, headers = user
        item_id = add(client, headers, make_product()).json()["data"]["items"][0]["id"]
        response = client.put(f"/api/cart/{item_id}", json={"quantity": 0}, headers=headers)
        assert response.json()["data"]["items"] == []

    def test_remove_and_clear(self, client, user, make_product):
        _, headers = user
        item_id = add(client, headers, make_product(name="A")).json()["data"]["items"][0]["id"]
        add(client, headers, make_product(name="B"))
        data = client.delete(f"/api/cart/{item_id}", headers=headers).json()["data"]
        assert data["itemCount"] == 1
        assert client.delete("/api/cart", headers=headers).status_code == 200
        assert client.get("/api/cart", headers=headers).json()["data"]["items"] == []

    def test_move_to_wishlist(self, client, user, make_product):
        _, headers = user
        product_id = make_product()
        item_id = add(client, headers, product_id).json()["data"]["items"][0]["id"]
        response = client.post("/api/cart/move-to-wishlist", json={"item_ids": [item_id]}, headers=headers)
        assert response.json()["data"]["items"] == []
        wishlist = client.get("/api/wishlist", headers=headers).json()["data"]
        assert [i["product_id"] for i in wishlist["items"]] == [product_id]

    def test_variant_line(self, client, user, make_product):
        _, headers = user
        product_id = make_product(variants=[{"id": "v-red", "name": "Red", "sku": "W-R", "price_cents": 1500, "stock": 1}])
        data = add(client, headers, product_id, 1, variant_id="v-red").json()["data"]
        assert data["items"][0]["price_cents"] == 1500
        assert add(client, headers, product_id, 1, variant_id="v-red").status_code == 400


class TestWishlist:
    def test_duplicate_rejected(self, client, user, make_product):
        _, headers = user
        product_id = make_product()
        assert client.post("/api/wishlist", json={"product_id": product_id}, headers=headers).status_code == 200
        response = client.post("/api/wishlist", json={"product_id": product_id}, headers=headers)
        assert response.status_code == 400

    def test_check(self, client, user, make_product):
        _, headers = user
        product_id = make_product()
        assert client.get(f"/api/wishlist/check/{product_id}", headers=headers).json()["data"]["inWishlist"] is False
        client.post("/api/wishlist", json={"product_id": product_id}, headers=headers)
        assert client.get(f"/api/wishlist/check/{product_id}", headers=headers).json()["data"]["inWishlist"] is True

    def test_move_to_cart_respects_stock(self, client, db, user, make_product):
        _, headers = user
        in_stock = make_product(name="Here", stock=3)
        sold_out = make_product(name="Gone", stock=0)
        for product_id in (in_stock, sold_out):
            client.post("/api/wishlist", json={"product_id": product_id}, headers=headers)
        items = client.get("/api/wishlist", headers=headers).json()["data"]["items"]
        response = client.post(
            "/api/wishlist/move-to-cart",
            json={"item_ids": [i["id"] for i in items]},
            headers=headers,
        )
        data = response.json()["data"]
        assert len(data["moved"]) == 1
        assert len(data["skipped"]) == 1
        assert [i["product_id"] for i in data["items"]] == [sold_out]
        cart = client.get("/api/cart", headers=headers).json()["data"]
        assert [i["product_id"] for i in cart["items"]] == [in_stock]

    def test_remove_missing_item(self, client, user):
        _, headers = user
        client.get("/api/wishlist", headers=headers)
        assert client.delete("/api/wishlist/nope", headers=headers).status_code == 404
