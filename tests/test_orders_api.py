import pytest
from bson import ObjectId


@pytest.fixture
def order_payload(checkout_payload):
    def _payload(*lines):
        return {**checkout_payload, "items": [{"product_id": p, "quantity": q} for p, q in lines]}
    return _payload


def create(client, user, payload):
    res = client.post("/orders", json=payload, headers=user["headers"])
    assert res.status_code == 201, res.text
    return res.json()


def test_create_order_directly(client, db, customer, make_product, order_payload):
    pid = make_product(price=5.0, stock=4)
    order = create(client, customer, order_payload((pid, 3)))
    assert order["total_amount"] == 15.0
    assert db["product"].find_one({"_id": ObjectId(pid)})["stock"] == 1


def test_create_order_requires_items(client, customer, order_payload):
    res = client.post("/orders", json=order_payload(), headers=customer["headers"])
    assert res.status_code == 400
    assert res.json()["errors"][0]["field"] == "items"


def test_create_order_with_too_much_quantity(client, customer, make_product, order_payload):
    pid = make_product(stock=1)
    res = client.post("/orders", json=order_payload((pid, 2)), headers=customer["headers"])
    assert res.status_code == 400
    assert "Short by: 1" in res.json()["detail"]


def test_users_only_see_their_own_orders(client, customer, other_customer, admin, make_product, order_payload):
    pid = make_product(stock=10)
    mine = create(client, customer, order_payload((pid, 1)))
    create(client, other_customer, order_payload((pid, 1)))

    listed = client.get("/orders", headers=customer["headers"]).json()
    assert [o["id"] for o in listed["orders"]] == [mine["id"]]
    assert listed["pagination"]["total"] == 1

    assert client.get("/orders", headers=admin["headers"]).json()["pagination"]["total"] == 2
    filtered = client.get("/orders", params={"user_id": customer["id"]}, headers=admin["headers"]).json()
    assert [o["id"] for o in filtered["orders"]] == [mine["id"]]
    searched = client.get("/orders", params={"user_search": "BOB"}, headers=admin["headers"]).json()
    assert [o["user_id"] for o in searched["orders"]] == [other_customer["id"]]


def test_my_orders_and_status_filter(client, admin, customer, make_product, order_payload):
    pid = make_product(stock=10)
    first = create(client, customer, order_payload((pid, 1)))
    create(client, customer, order_payload((pid, 1)))
    client.put(f"/orders/{first['id']}/status", json={"status": "confirmed"}, headers=admin["headers"])

    res = client.get("/orders/my", params={"status": "confirmed"}, headers=customer["headers"]).json()
    assert [o["id"] for o in res["orders"]] == [first["id"]]

    res = client.get("/orders/my", params={"limit": 1}, headers=customer["headers"]).json()
    assert res["pagination"] == {"current_page": 1, "total_pages": 2, "total": 2, "has_next": True, "has_prev": False}

    assert client.get("/orders/my", params={"status": "lost"}, headers=customer["headers"]).status_code == 400


def test_get_order_access(client, customer, other_customer, admin, make_product, order_payload):
    order = create(client, customer, order_payload((make_product(), 1)))

    res = client.get(f"/orders/{order['id']}", headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["user"]["username"] == "alice"
    assert client.get(f"/orders/{order['id']}", headers=other_customer["headers"]).status_code == 403
    assert client.get(f"/orders/{order['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/orders/{ObjectId()}", headers=admin["headers"]).status_code == 404
    assert client.get("/orders/bogus", headers=admin["headers"]).status_code == 400


def test_cancel_endpoint(client, db, customer, other_customer, make_product, order_payload):
    pid = make_product(stock=3)
    order = create(client, customer, order_payload((pid, 3)))

    assert client.put(f"/orders/{order['id']}/cancel", headers=other_customer["headers"]).status_code == 403
    res = client.put(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["status"] == "cancelled"
    assert db["product"].find_one({"_id": ObjectId(pid)})["stock"] == 3

    res = client.put(f"/orders/{order['id']}/cancel", headers=customer["headers"])
    assert res.status_code == 400
    assert db["product"].find_one({"_id": ObjectId(pid)})["stock"] == 3


def test_status_update_is_admin_only(client, db, customer, admin, make_product, order_payload):
    pid = make_product(stock=3)
    order = create(client, customer, order_payload((pid, 2)))

    res = client.put(f"/orders/{order['id']}/status", json={"status": "shipped"}, headers=customer["headers"])
    assert res.status_code == 403

    res = client.put(f"/orders/{order['id']}/status", json={"status": "lost"}, headers=admin["headers"])
    assert res.status_code == 400

    res = client.put(
        f"/orders/{order['id']}/status",
        json={"status": "shipped", "tracking_number": "1Z999"},
        headers=admin["headers"],
    )
    assert res.json()["tracking_number"] == "1Z999"

    res = client.put(f"/orders/{order['id']}/status", json={"status": "cancelled"}, headers=admin["headers"])
    assert res.json()["status"] == "cancelled"
    assert db["product"].find_one({"_id": ObjectId(pid)})["stock"] == 3


def test_stats_summary(client, customer, admin, make_product, order_payload):
    pid = make_product(price=10.0, stock=20)
    a = create(client, customer, order_payload((pid, 1)))
    b = create(client, customer, order_payload((pid, 2)))
    create(client, customer, order_payload((pid, 4)))
    client.put(f"/orders/{a['id']}/status", json={"status": "delivered"}, headers=admin["headers"])
    client.put(f"/orders/{b['id']}/status", json={"status": "processing"}, headers=admin["headers"])

    assert client.get("/orders/stats/summary", headers=customer["headers"]).status_code == 403
    stats = client.get("/orders/stats/summary", headers=admin["headers"]).json()
    assert stats["total_orders"] == 3
    assert stats["total_revenue"] == 30.0
    assert {s["status"]: s["count"] for s in stats["status_breakdown"]} == {
        "delivered": 1,
        "pending": 1,
        "processing": 1,
    }
