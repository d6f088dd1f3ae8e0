"""Tests for order placement, lifecycle transitions and stock bookkeeping."""
import mongomock


SHIPPING = {"full_name": "سارة", "phone": "0661000000", "wilaya": "الجزائر", "city": "باب الزوار", "street": "حي 5 جويلية"}


def place_order(client, headers, product, quantity=2, **extra):
    payload = {
        "items": [{"product_id": str(product["_id"]), "quantity": quantity}],
        "shipping_address": SHIPPING,
    }
    payload.update(extra)
    return client.post("/api/orders", json=payload, headers=headers)


class TestCreate:
    def test_order_uses_catalog_price_and_reserves_stock(self, client, make_product, user_headers, db):
        product = make_product(price=1000, stock_quantity=5)

        response = place_order(
            client,
            user_headers,
            product,
            items=[{"product_id": str(product["_id"]), "quantity": 2, "price": 1}],
        )

        assert response.status_code == 201
        order = response.get_json()["order"]
        assert order["total"] == 2000
        assert order["status"] == "pending"
        assert order["payment_method"] == "cash_on_delivery"
        assert order["order_number"].startswith("ORD-")
        assert [entry["status"] for entry in order["timeline"]] == ["pending"]
        assert db.products.find_one({"_id": product["_id"]})["stock_quantity"] == 3

    def test_order_number_format(self, client, make_product, user_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        prefix, year, digits = order["order_number"].split("-")
        assert prefix == "ORD"
        assert len(year) == 4
        assert len(digits) == 9 and digits.isdigit()

    def test_insufficient_stock(self, client, make_product, user_headers, db):
        product = make_product(stock_quantity=1)

        response = place_order(client, user_headers, product, quantity=2)

        assert response.status_code == 400
        assert db.products.find_one({"_id": product["_id"]})["stock_quantity"] == 1
        assert db.orders.count_documents({}) == 0

    def test_selling_out_marks_product_unavailable(self, client, make_product, user_headers, db):
        product = make_product(stock_quantity=2)

        place_order(client, user_headers, product, quantity=2)

        stored = db.products.find_one({"_id": product["_id"]})
        assert stored["stock_quantity"] == 0
        assert stored["in_stock"] is False

    def test_requires_items(self, client, user_headers):
        response = client.post(
            "/api/orders", json={"items": [], "shipping_address": SHIPPING}, headers=user_headers
        )

        assert response.status_code == 400

    def test_requires_street_and_city(self, client, make_product, user_headers):
        response = place_order(
            client, user_headers, make_product(), shipping_address={"wilaya": "وهران"}
        )

        assert response.status_code == 400

    def test_unknown_product(self, client, user_headers):
        response = place_order(client, user_headers, {"_id": "5f5f5f5f5f5f5f5f5f5f5f5f"})

        assert response.status_code == 400

    def test_stock_is_restored_when_a_later_item_runs_out(
        self, client, make_product, user_headers, db, monkeypatch
    ):
        first = make_product(name="منتج أول", stock_quantity=2)
        second = make_product(name="منتج ثان", stock_quantity=5)
        original_update_one = mongomock.Collection.update_one

        def sell_out_second_on_reserve(collection, query, update, *args, **kwargs):
            # Another customer empties the second product between validation and reservation.
            if query.get("_id") == second["_id"] and "stock_quantity" in query:
                original_update_one(
                    collection, {"_id": second["_id"]}, {"$set": {"stock_quantity": 0}}
                )
            return original_update_one(collection, query, update, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, "update_one", sell_out_second_on_reserve)

        response = place_order(
            client,
            user_headers,
            first,
            items=[
                {"product_id": str(first["_id"]), "quantity": 2},
                {"product_id": str(second["_id"]), "quantity": 1},
            ],
        )

        assert response.status_code == 400
        restored = db.products.find_one({"_id": first["_id"]})
        assert restored["stock_quantity"] == 2
        assert restored["in_stock"] is True
        assert db.orders.count_documents({}) == 0


class TestLifecycle:
    def test_status_progression_appends_timeline(self, client, make_product, user_headers, admin_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        for status in ("confirmed", "processing", "shipped"):
            response = client.patch(
                f"/api/orders/{order['id']}/status",
                json={"status": status, "note": f"→ {status}"},
                headers=admin_headers,
            )
            assert response.status_code == 200

        response = client.patch(
            f"/api/orders/{order['id']}/status",
            json={"status": "delivered", "tracking_number": "TRK-1"},
            headers=admin_headers,
        )
        data = response.get_json()["order"]
        assert [entry["status"] for entry in data["timeline"]] == [
            "pending",
            "confirmed",
            "processing",
            "shipped",
            "delivered",
        ]
        assert data["tracking_number"] == "TRK-1"

    def test_invalid_status(self, client, make_product, user_headers, admin_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "lost"}, headers=admin_headers
        )

        assert response.status_code == 400

    def test_disallowed_transition(self, client, make_product, user_headers, admin_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "delivered"}, headers=admin_headers
        )

        assert response.status_code == 400

    def test_admin_cancel_restores_stock(self, client, make_product, user_headers, admin_headers, db):
        product = make_product(stock_quantity=5)
        order = place_order(client, user_headers, product, quantity=3).get_json()["order"]

        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin_headers
        )

        assert response.status_code == 200
        assert db.products.find_one({"_id": product["_id"]})["stock_quantity"] == 5

    def test_status_update_requires_admin(self, client, make_product, user_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        response = client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=user_headers
        )

        assert response.status_code == 403

    def test_owner_cancels_pending_order(self, client, make_product, user_headers, db):
        product = make_product(stock_quantity=4)
        order = place_order(client, user_headers, product, quantity=4).get_json()["order"]

        response = client.patch(f"/api/orders/{order['id']}/cancel", headers=user_headers)

        assert response.status_code == 200
        data = response.get_json()["order"]
        assert data["status"] == "cancelled"
        assert data["timeline"][-1]["status"] == "cancelled"
        stored = db.products.find_one({"_id": product["_id"]})
        assert stored["stock_quantity"] == 4
        assert stored["in_stock"] is True

    def test_owner_cannot_cancel_confirmed_order(self, client, make_product, user_headers, admin_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]
        client.patch(
            f"/api/orders/{order['id']}/status", json={"status": "confirmed"}, headers=admin_headers
        )

        response = client.patch(f"/api/orders/{order['id']}/cancel", headers=user_headers)

        assert response.status_code == 400

    def test_delete_restores_stock_unless_cancelled(self, client, make_product, user_headers, admin_headers, db):
        product = make_product(stock_quantity=10)
        active = place_order(client, user_headers, product, quantity=2).get_json()["order"]
        cancelled = place_order(client, user_headers, product, quantity=3).get_json()["order"]
        client.patch(f"/api/orders/{cancelled['id']}/cancel", headers=user_headers)
        assert db.products.find_one({"_id": product["_id"]})["stock_quantity"] == 8

        client.delete(f"/api/orders/{active['id']}", headers=admin_headers)
        client.delete(f"/api/orders/{cancelled['id']}", headers=admin_headers)

        assert db.products.find_one({"_id": product["_id"]})["stock_quantity"] == 10
        assert db.orders.count_documents({}) == 0


class TestAccess:
    def test_owner_and_admin_can_view(self, client, make_product, make_user, user_headers, admin_headers, auth_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        assert client.get(f"/api/orders/{order['id']}", headers=user_headers).status_code == 200
        assert client.get(f"/api/orders/{order['id']}", headers=admin_headers).status_code == 200
        assert (
            client.get(f"/api/orders/{order['id']}", headers=auth_headers(make_user())).status_code
            == 403
        )

    def test_lookup_by_order_number(self, client, make_product, user_headers):
        order = place_order(client, user_headers, make_product()).get_json()["order"]

        response = client.get(f"/api/orders/{order['order_number']}", headers=user_headers)

        assert response.status_code == 200

    def test_my_orders(self, client, make_product, make_user, user_headers, auth_headers):
        product = make_product()
        place_order(client, user_headers, product, quantity=1)
        place_order(client, auth_headers(make_user()), product, quantity=1)

        mine = client.get("/api/orders/me", headers=user_headers).get_json()
        alias = client.get("/api/orders/user", headers=user_headers).get_json()

        assert mine["pagination"]["total"] == 1
        assert alias["pagination"]["total"] == 1

    def test_admin_listing_and_stats(self, client, make_product, user_headers, admin_headers):
        product = make_product(price=1000, stock_quantity=10)
        place_order(client, user_headers, product, quantity=1)
        cancelled = place_order(client, user_headers, product, quantity=3).get_json()["order"]
        client.patch(f"/api/orders/{cancelled['id']}/cancel", headers=user_headers)

        pending = client.get("/api/orders/admin?status=pending", headers=admin_headers).get_json()
        stats = client.get("/api/orders/admin/stats", headers=admin_headers).get_json()["stats"]

        assert pending["pagination"]["total"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["cancelled"] == 1
        assert stats["total_revenue"] == 1000
        assert stats["average_order_value"] == 1000

    def test_admin_listing_requires_admin(self, client, user_headers):
        assert client.get("/api/orders/admin", headers=user_headers).status_code == 403
