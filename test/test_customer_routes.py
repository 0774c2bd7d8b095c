from decimal import Decimal

from menuqr.models import RestaurantStatus


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_validate_table(client, session, table_qr, encoded_table):
    response = client.post(
        "/customer/validate-table",
        json={"encoded_table": encoded_table, "restaurant_slug": "karachi-grill"},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["table_number"] == "5"
    assert body["restaurant_name"] == "Karachi Grill"
    assert body["message"] == "Valid QR code"
    session.refresh(table_qr)
    assert table_qr.scans_count == 1


def test_validate_table_errors(client, session, table_qr, encoded_table):
    response = client.post("/customer/validate-table", json={"restaurant_slug": "karachi-grill"})
    assert response.status_code == 400

    response = client.post(
        "/customer/validate-table",
        json={"encoded_table": "garbage", "restaurant_slug": "karachi-grill"},
    )
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid or corrupted table parameter"

    table_qr.is_active = False
    session.add(table_qr)
    session.commit()
    response = client.post(
        "/customer/validate-table",
        json={"encoded_table": encoded_table, "restaurant_slug": "karachi-grill"},
    )
    assert response.status_code == 403


def test_menu(client, menu):
    response = client.get("/customer/karachi-grill/menu")

    assert response.status_code == 200
    body = response.json()
    assert body["currency"] == "PKR"
    names = [item["name"] for category in body["categories"] for item in category["items"]]
    assert "Sweet Lassi" not in names
    assert "Chicken Biryani" in names


def test_menu_of_suspended_restaurant_is_hidden(client, session, restaurant, menu):
    restaurant.status = RestaurantStatus.suspended
    session.add(restaurant)
    session.commit()

    assert client.get("/customer/karachi-grill/menu").status_code == 404
    assert client.get("/customer/no-such-place/menu").status_code == 404


def test_place_order_and_poll_status(client, menu, encoded_table):
    response = client.post(
        "/customer/karachi-grill/orders",
        json={
            "encoded_table": encoded_table,
            "customer_id": "guest-77",
            "items": [
                {"menu_item_id": menu["biryani"].id, "quantity": 2, "special_requests": "Extra raita"},
                # Client-side prices are ignored
                {"menu_item_id": menu["chai"].id, "quantity": 1, "price": 1},
            ],
        },
    )

    assert response.status_code == 201
    order = response.json()["order"]
    assert order["delivery_type"] == "dine_in"
    assert order["table_number"] == "5"
    assert Decimal(order["total"]) == Decimal("980.00")
    assert order["items"][0]["special_requests"] == "Extra raita"
    assert order["restaurant_name"] == "Karachi Grill"

    status = client.get(f"/customer/orders/{order['id']}/status").json()
    assert status == {"success": True, "status": "pending", "estimated_time": 20}

    history = client.get("/customer/orders", params={"customer_id": "guest-77"}).json()
    assert [o["id"] for o in history["orders"]] == [order["id"]]


def test_place_order_errors(client, menu):
    response = client.post(
        "/customer/karachi-grill/orders",
        json={"items": [{"menu_item_id": menu["lassi"].id, "quantity": 1}]},
    )
    assert response.status_code == 400
    assert "unavailable" in response.json()["detail"]

    response = client.post(
        "/customer/karachi-grill/orders",
        json={"encoded_table": "garbage", "items": [{"menu_item_id": menu["chai"].id, "quantity": 1}]},
    )
    assert response.status_code == 400

    assert client.get("/customer/orders/9999/status").status_code == 404
