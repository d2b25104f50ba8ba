"""HTTP tests for the order, delivery and inventory endpoints."""
from conftest import auth, stock_of
from sqlalchemy.exc import IntegrityError

from gemstone_shop.main import integrity_error_status


def order_body(*items, **extra):
    body = {
        "total_amount": sum(p.price * q for p, q in items),
        "order_items": [{"product_id": p.id, "quantity": q, "price_at_purchase": p.price} for p, q in items],
    }
    body.update(extra)
    return body


def test_health(client):
    assert client.get("/api/health").json()["status"] == "ok"


def test_requires_token(client):
    assert client.get("/api/orders/my-orders").status_code == 401
    response = client.get("/api/orders/my-orders", headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_create_order(client, db, customer, make_product):
    ring = make_product(stock=10)
    response = client.post("/api/orders", json=order_body((ring, 3), notes="Engrave 'A'"), headers=auth(customer))

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "pending"
    assert body["data"]["user_id"] == customer.id
    assert body["data"]["notes"] == "Engrave 'A'"
    assert body["data"]["tax_amount"] == 0
    assert body["data"]["items"][0]["product_name"] == "Sapphire Ring"
    assert body["low_stock_warnings"] == []
    assert stock_of(db, ring.id) == 7


def test_create_order_stock_issue(client, db, customer, make_product):
    ring = make_product(stock=2)
    response = client.post("/api/orders", json=order_body((ring, 5)), headers=auth(customer))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["stock_issues"] == [
        {
            "product_id": ring.id,
            "product_name": "Sapphire Ring",
            "requested": 5,
            "available": 2,
            "issue": "Insufficient stock",
        }
    ]
    assert stock_of(db, ring.id) == 2
    assert client.get("/api/orders/my-orders", headers=auth(customer)).json()["count"] == 0


def test_create_order_validation(client, customer, make_product):
    ring = make_product(stock=2)
    body = order_body((ring, 1))
    body["order_items"][0]["quantity"] = 0
    response = client.post("/api/orders", json=body, headers=auth(customer))
    assert response.status_code == 400
    assert response.json()["message"] == "Validation failed"

    response = client.post("/api/orders", json={"order_items": []}, headers=auth(customer))
    assert response.status_code == 400


def test_status_flow_and_stock_restore(client, db, admin, customer, make_product):
    ring = make_product(stock=10)
    order_id = client.post("/api/orders", json=order_body((ring, 3)), headers=auth(customer)).json()["data"]["id"]

    response = client.put(f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["stock_restored"] is False

    response = client.put(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=auth(admin))
    body = response.json()
    assert body["stock_restored"] is True
    assert body["previous_status"] == "confirmed"
    assert body["data"]["status"] == "cancelled"
    assert stock_of(db, ring.id) == 10

    response = client.put(f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(admin))
    assert response.status_code == 400
    assert response.json()["current_status"] == "cancelled"
    assert response.json()["attempted_status"] == "confirmed"


def test_backward_status_rejected(client, db, admin, customer, make_product):
    ring = make_product(stock=10)
    order_id = client.post("/api/orders", json=order_body((ring, 1)), headers=auth(customer)).json()["data"]["id"]
    client.put(f"/api/orders/{order_id}/status", json={"status": "delivered"}, headers=auth(admin))

    response = client.put(f"/api/orders/{order_id}/status", json={"status": "in_transit"}, headers=auth(admin))
    assert response.status_code == 400
    assert "only move forward" in response.json()["message"]
    assert client.get(f"/api/orders/{order_id}", headers=auth(admin)).json()["data"]["status"] == "delivered"


def test_invalid_status_value(client, admin):
    response = client.put("/api/orders/777/status", json={"status": "shipped"}, headers=auth(admin))
    assert response.status_code == 400
    assert "cancelled" in response.json()["valid_statuses"]


def test_status_missing_order(client, admin):
    response = client.put("/api/orders/777/status", json={"status": "confirmed"}, headers=auth(admin))
    assert response.status_code == 404


def test_status_update_requires_admin(client, customer, manager, make_product):
    ring = make_product(stock=10)
    order_id = client.post("/api/orders", json=order_body((ring, 1)), headers=auth(customer)).json()["data"]["id"]
    for user in (customer, manager):
        response = client.put(f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(user))
        assert response.status_code == 403
    assert client.delete(f"/api/orders/{order_id}", headers=auth(customer)).status_code == 403


def test_delete_order(client, db, admin, customer, make_product):
    ring = make_product(stock=10)
    first = client.post("/api/orders", json=order_body((ring, 2)), headers=auth(customer)).json()["data"]["id"]
    second = client.post("/api/orders", json=order_body((ring, 3)), headers=auth(customer)).json()["data"]["id"]
    assert stock_of(db, ring.id) == 5

    response = client.delete(f"/api/orders/{first}", headers=auth(admin))
    assert response.status_code == 200
    assert response.json()["stock_restored"] is True
    assert stock_of(db, ring.id) == 7

    client.put(f"/api/orders/{second}/status", json={"status": "cancelled"}, headers=auth(admin))
    response = client.delete(f"/api/orders/{second}", headers=auth(admin))
    assert response.json()["stock_restored"] is False
    assert stock_of(db, ring.id) == 10

    assert client.delete(f"/api/orders/{second}", headers=auth(admin)).status_code == 404


def test_order_visibility(client, customer, other_customer, courier, manager, make_product):
    ring = make_product(stock=10)
    order_id = client.post("/api/orders", json=order_body((ring, 1)), headers=auth(customer)).json()["data"]["id"]

    assert client.get(f"/api/orders/{order_id}", headers=auth(customer)).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=auth(manager)).status_code == 200
    assert client.get(f"/api/orders/{order_id}", headers=auth(other_customer)).status_code == 403
    assert client.get(f"/api/orders/{order_id}/items", headers=auth(courier)).status_code == 403
    assert client.get("/api/orders/999", headers=auth(customer)).status_code == 404

    client.put(f"/api/orders/{order_id}/assign-delivery", json={"delivery_man_id": courier.id}, headers=auth(manager))
    response = client.get(f"/api/orders/{order_id}/items", headers=auth(courier))
    assert response.status_code == 200
    assert response.json()["count"] == 1
    assert response.json()["data"][0]["quantity"] == 1


def test_delivery_assignment_flow(client, admin, manager, customer, courier, make_product):
    ring = make_product(stock=10)
    order_id = client.post("/api/orders", json=order_body((ring, 1)), headers=auth(customer)).json()["data"]["id"]
    client.put(f"/api/orders/{order_id}/status", json={"status": "confirmed"}, headers=auth(admin))

    pending = client.get("/api/orders/manager/pending", headers=auth(manager)).json()
    assert [o["id"] for o in pending["data"]] == [order_id]

    men = client.get("/api/orders/manager/delivery-men", headers=auth(manager)).json()
    assert [u["email"] for u in men["data"]] == ["courier@test.com"]

    response = client.put(
        f"/api/orders/{order_id}/assign-delivery", json={"delivery_man_id": customer.id}, headers=auth(manager)
    )
    assert response.status_code == 400

    response = client.put(f"/api/orders/{order_id}/assign-delivery", json={}, headers=auth(manager))
    assert response.status_code == 400

    response = client.put(
        f"/api/orders/{order_id}/assign-delivery", json={"delivery_man_id": courier.id}, headers=auth(manager)
    )
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "assigned"
    assert response.json()["data"]["delivery_man_id"] == courier.id

    mine = client.get("/api/orders/delivery/my-deliveries", headers=auth(courier)).json()
    assert [o["id"] for o in mine["data"]] == [order_id]
    assert client.get("/api/orders/delivery/my-deliveries", headers=auth(customer)).status_code == 403

    by_courier = client.get(f"/api/orders/manager/delivery-man/{courier.id}", headers=auth(manager)).json()
    assert by_courier["count"] == 1
    assert client.get(f"/api/orders/manager/delivery-man/{customer.id}", headers=auth(manager)).status_code == 400

    response = client.put(f"/api/orders/{order_id}/unassign-delivery", headers=auth(manager))
    assert response.json()["data"]["status"] == "confirmed"
    assert response.json()["data"]["delivery_man_id"] is None

    response = client.put(
        f"/api/orders/{order_id}/assign-delivery", json={"delivery_man_id": courier.id}, headers=auth(customer)
    )
    assert response.status_code == 403


def test_list_orders(client, admin, customer, other_customer, make_product):
    ring = make_product(stock=10)
    client.post("/api/orders", json=order_body((ring, 1)), headers=auth(customer))
    client.post("/api/orders", json=order_body((ring, 1)), headers=auth(other_customer))

    assert client.get("/api/orders/all", headers=auth(admin)).json()["count"] == 2
    assert client.get("/api/orders/all", headers=auth(customer)).status_code == 403
    assert client.get("/api/orders/my-orders", headers=auth(customer)).json()["count"] == 1


def test_low_stock_endpoint(client, admin, customer, make_product):
    make_product("Diamond Ring", stock=0)
    make_product("Topaz Bracelet", stock=7, type="bracelet")
    make_product("Garnet Pendant", stock=12, type="pendant")

    body = client.get("/api/orders/inventory/low-stock", headers=auth(admin)).json()
    assert body["summary"]["threshold"] == 10
    assert body["summary"]["total_low_stock_products"] == 2
    assert body["products"]["out_of_stock"][0]["name"] == "Diamond Ring"

    body = client.get("/api/orders/inventory/low-stock?threshold=20", headers=auth(admin)).json()
    assert body["summary"]["total_low_stock_products"] == 3

    assert client.get("/api/orders/inventory/low-stock", headers=auth(customer)).status_code == 403


def test_products(client, db, admin, customer):
    body = {"name": "Ruby Ring", "type": "ring", "price": 499.0, "quantity_in_stock": 4}
    assert client.post("/api/products", json=body, headers=auth(customer)).status_code == 403

    response = client.post("/api/products", json=body, headers=auth(admin))
    assert response.status_code == 201
    product_id = response.json()["data"]["id"]

    response = client.put(f"/api/products/{product_id}/stock", json={"quantity_in_stock": 25}, headers=auth(admin))
    assert response.json()["data"]["quantity_in_stock"] == 25
    assert client.get(f"/api/products/{product_id}").json()["data"]["quantity_in_stock"] == 25

    response = client.put(f"/api/products/{product_id}/stock", json={"quantity_in_stock": -1}, headers=auth(admin))
    assert response.status_code == 400
    assert client.get("/api/products/9999").status_code == 404


def test_duplicate_order_number_conflict(client, db, customer, make_product):
    ring = make_product(stock=10)
    first = client.post("/api/orders", json=order_body((ring, 1), order_number="GEM-42"), headers=auth(customer))
    assert first.status_code == 201
    assert stock_of(db, ring.id) == 9

    response = client.post("/api/orders", json=order_body((ring, 2), order_number="GEM-42"), headers=auth(customer))
    assert response.status_code == 409
    assert response.json() == {"success": False, "message": "Resource already exists"}
    assert stock_of(db, ring.id) == 9
    assert client.get("/api/orders/my-orders", headers=auth(customer)).json()["count"] == 1


def test_integrity_error_status():
    def error(message):
        return IntegrityError("INSERT INTO orders ...", {}, Exception(message))

    assert integrity_error_status(error("UNIQUE constraint failed: orders.order_number")) == (409, "Resource already exists")
    assert integrity_error_status(error("FOREIGN KEY constraint failed")) == (400, "Referenced resource does not exist")
    assert integrity_error_status(error("CHECK constraint failed: ck_product_stock")) == (400, "Constraint violation")
