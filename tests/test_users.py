from bson import ObjectId

import main
import make_admin

SIGNUP = {
    "username": "dana",
    "email": "Dana@Example.com",
    "password": "hunter22",
    "first_name": "Dana",
    "last_name": "Scully",
}


def test_register_login_and_me(client):
    res = client.post("/auth/register", json=SIGNUP)
    assert res.status_code == 201
    user = res.json()["user"]
    assert user["email"] == "dana@example.com"
    assert user["role"] == "user"
    assert "password_hash" not in user

    res = client.post("/auth/login", json={"email": "dana@example.com", "password": "hunter22"})
    token = res.json()["access_token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"}).json()
    assert me["username"] == "dana"

    assert client.post("/auth/login", json={"email": "dana@example.com", "password": "wrong"}).status_code == 400


def test_register_conflicts(client, customer):
    assert client.post("/auth/register", json={**SIGNUP, "username": "alice"}).status_code == 409
    assert client.post("/auth/register", json={**SIGNUP, "email": "alice@example.com"}).status_code == 409
    assert client.post("/auth/register", json={**SIGNUP, "username": "no spaces"}).status_code == 400


def test_bad_tokens(client):
    assert client.get("/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Basic abc"}).status_code == 401


def test_deactivated_user_is_locked_out(client, make_user):
    ghost = make_user("ghost", is_active=False)
    assert client.get("/auth/me", headers=ghost["headers"]).status_code == 401
    res = client.post("/auth/login", json={"email": "ghost@example.com", "password": "secret123"})
    assert res.status_code == 403


def test_list_users_admin_only(client, customer, other_customer, admin):
    assert client.get("/users", headers=customer["headers"]).status_code == 403
    body = client.get("/users", headers=admin["headers"]).json()
    assert body["pagination"]["total"] == 3
    assert all("password_hash" not in u for u in body["users"])

    body = client.get("/users", params={"search": "ALI"}, headers=admin["headers"]).json()
    assert [u["username"] for u in body["users"]] == ["alice"]


def test_profile_access(client, customer, other_customer, admin):
    assert client.get(f"/users/{customer['id']}", headers=customer["headers"]).status_code == 200
    assert client.get(f"/users/{customer['id']}", headers=other_customer["headers"]).status_code == 403
    assert client.get(f"/users/{customer['id']}", headers=admin["headers"]).status_code == 200
    assert client.get(f"/users/{ObjectId()}", headers=admin["headers"]).status_code == 404


def test_update_profile(client, customer, other_customer):
    url = f"/users/{customer['id']}"
    res = client.put(url, json={"first_name": "Alicia", "role": "admin"}, headers=customer["headers"])
    assert res.status_code == 200
    assert res.json()["first_name"] == "Alicia"
    assert res.json()["role"] == "user"

    res = client.put(url, json={"username": "bob"}, headers=customer["headers"])
    assert res.status_code == 409
    assert res.json()["detail"] == "This username is already taken"

    res = client.put(url, json={"email": "BOB@example.com"}, headers=customer["headers"])
    assert res.status_code == 409
    assert res.json()["detail"] == "This email is already taken"

    assert client.put(url, json={"first_name": "X"}, headers=other_customer["headers"]).status_code == 403


def test_update_profile_rejects_null_fields(client, db, customer):
    url = f"/users/{customer['id']}"
    for field in ("email", "username", "first_name"):
        res = client.put(url, json={field: None}, headers=customer["headers"])
        assert res.status_code == 400
        assert res.json()["errors"][0]["field"] == field

    stored = db["user"].find_one({"_id": ObjectId(customer["id"])})
    assert (stored["username"], stored["email"]) == ("alice", "alice@example.com")


def test_delete_and_toggle(client, customer, admin):
    assert client.delete(f"/users/{admin['id']}", headers=admin["headers"]).status_code == 400
    assert client.put(f"/users/{admin['id']}/toggle-status", headers=admin["headers"]).status_code == 400

    res = client.put(f"/users/{customer['id']}/toggle-status", headers=admin["headers"])
    assert res.json()["is_active"] is False
    assert client.get("/cart", headers=customer["headers"]).status_code == 401

    assert client.delete(f"/users/{customer['id']}", headers=admin["headers"]).status_code == 200
    assert client.delete(f"/users/{customer['id']}", headers=admin["headers"]).status_code == 404


def test_user_details(client, customer, admin, make_product, address):
    pid = make_product(price=20.0, stock=5)
    client.post("/orders", json={
        "items": [{"product_id": pid, "quantity": 2}],
        "shipping_address": address,
        "billing_address": address,
        "payment_method": "cash_on_delivery",
    }, headers=customer["headers"])
    client.post("/cart/add", json={"product_id": pid, "quantity": 1}, headers=customer["headers"])

    body = client.get(f"/users/{customer['id']}/details", headers=admin["headers"]).json()
    assert body["user"]["username"] == "alice"
    assert body["statistics"] == {
        "total_orders": 1,
        "total_spent": 40.0,
        "cart_items": 1,
        "orders_by_status": {"pending": 1},
    }
    assert len(body["orders"]) == 1
    assert body["cart"]["total_amount"] == 20.0


def test_make_admin_promotes_user(db, customer, capsys):
    assert make_admin.main(["alice"]) == 0
    assert db["user"].find_one({"_id": ObjectId(customer["id"])})["role"] == "admin"
    assert "promoted to admin" in capsys.readouterr().out
    assert make_admin.main(["nobody"]) == 1


def test_health(client):
    assert client.get("/health").json()["status"] == "OK"
    assert client.get("/test").json()["connection_status"] == "Connected"


def test_requests_over_the_limit_get_429(client, monkeypatch):
    monkeypatch.setattr(main, "RATE_LIMIT_MAX_REQUESTS", 3)
    for _ in range(3):
        assert client.get("/health").status_code == 200

    res = client.get("/health")
    assert res.status_code == 429
    assert res.json()["detail"] == "Too many requests from this IP, please try again later."
