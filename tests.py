from datetime import timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

import crud
from models import Bid, Product, User, utcnow


def register(client: TestClient, username, is_seller=False):
    response = client.post("/users/", json={
        "username": username,
        "email": f"{username}@example.com",
        "fullName": username.title(),
        "password": "testpass",
        "isSeller": is_seller,
    })
    assert response.status_code == 201
    return response.json()


def login(client: TestClient, username):
    response = client.post("/login/", data={"username": username, "password": "testpass"})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def signup(client: TestClient, username, is_seller=False):
    user = register(client, username, is_seller=is_seller)
    return user, login(client, username)


def product_payload(category_id, **overrides):
    now = utcnow()
    payload = {
        "title": "Vintage camera",
        "description": "A camera in working order",
        "imageUrl": "https://example.com/camera.png",
        "categoryId": category_id,
        "initialPrice": 250,
        "increment": 10,
        "startDate": (now - timedelta(hours=1)).isoformat(),
        "endDate": (now + timedelta(days=7)).isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def seller(client):
    return signup(client, "seller", is_seller=True)


@pytest.fixture
def buyer(client):
    return signup(client, "buyer")


@pytest.fixture
def admin(client, db: Session):
    user, _ = signup(client, "admin")
    db.query(User).filter(User.id == user["id"]).update({"is_admin": True})
    db.commit()
    return user, login(client, "admin")


@pytest.fixture
def product(client, seller, category):
    _, headers = seller
    response = client.post("/products/", json=product_payload(category.id), headers=headers)
    assert response.status_code == 201
    return response.json()


# Users
def test_create_user(client: TestClient):
    user = register(client, "testuser", is_seller=True)
    assert user["username"] == "testuser"
    assert user["fullName"] == "Testuser"
    assert user["isSeller"] is True
    assert user["isAdmin"] is False
    assert "password" not in user and "hashedPassword" not in user


def test_duplicate_username(client: TestClient):
    register(client, "testuser")
    response = client.post("/users/", json={
        "username": "testuser", "email": "other@example.com", "fullName": "Other", "password": "testpass",
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Username already registered"


def test_login(client: TestClient):
    register(client, "testuser")
    headers = login(client, "testuser")
    response = client.get("/users/me", headers=headers)
    assert response.status_code == 200
    assert response.json()["username"] == "testuser"


def test_login_wrong_password(client: TestClient):
    register(client, "testuser")
    response = client.post("/login/", data={"username": "testuser", "password": "wrong"})
    assert response.status_code == 401


# Categories
def test_categories(client: TestClient, admin, buyer):
    _, admin_headers = admin
    _, buyer_headers = buyer
    assert client.post("/categories/", json={"name": "Art"}, headers=buyer_headers).status_code == 403

    response = client.post("/categories/", json={"name": "Art", "description": "Paintings"}, headers=admin_headers)
    assert response.status_code == 201
    category_id = response.json()["id"]
    assert response.json()["itemCount"] == 0

    assert client.post("/categories/", json={"name": "Art"}, headers=admin_headers).status_code == 400
    assert client.get(f"/categories/{category_id}/").json()["name"] == "Art"
    assert client.get("/categories/999/").status_code == 404
    assert [c["name"] for c in client.get("/categories/").json()] == ["Art"]


def test_duplicate_category_caught_by_unique_constraint(client: TestClient, admin, monkeypatch):
    _, admin_headers = admin
    assert client.post("/categories/", json={"name": "Art"}, headers=admin_headers).status_code == 201
    # a concurrent insert that slipped past the lookup
    monkeypatch.setattr(crud, "get_category_by_name", lambda db, name: None)
    response = client.post("/categories/", json={"name": "Art"}, headers=admin_headers)
    assert response.status_code == 400
    assert [c["name"] for c in client.get("/categories/").json()] == ["Art"]


# Products
def test_create_product_unauthorized(client: TestClient, category):
    response = client.post("/products/", json=product_payload(category.id))
    assert response.status_code == 401


def test_create_product_requires_seller(client: TestClient, buyer, category):
    _, headers = buyer
    response = client.post("/products/", json=product_payload(category.id), headers=headers)
    assert response.status_code == 403


def test_create_product(client: TestClient, seller, product):
    user, _ = seller
    assert product["sellerId"] == user["id"]
    assert product["currentPrice"] == 250
    assert product["initialPrice"] == 250
    assert product["bidCount"] == 0
    assert product["status"] == "active"
    assert product["auctionType"] == "traditional"
    category = client.get(f"/categories/{product['categoryId']}/").json()
    assert category["itemCount"] == 1


def test_create_upcoming_product(client: TestClient, seller, category):
    _, headers = seller
    start = utcnow() + timedelta(days=1)
    payload = product_payload(category.id, startDate=start.isoformat(), endDate=(start + timedelta(days=1)).isoformat())
    response = client.post("/products/", json=payload, headers=headers)
    assert response.status_code == 201
    assert response.json()["status"] == "upcoming"


def test_create_product_end_before_start(client: TestClient, seller, category):
    _, headers = seller
    now = utcnow()
    payload = product_payload(
        category.id, startDate=(now + timedelta(days=2)).isoformat(), endDate=(now + timedelta(days=1)).isoformat()
    )
    response = client.post("/products/", json=payload, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_create_product_in_the_past(client: TestClient, seller, category):
    _, headers = seller
    now = utcnow()
    payload = product_payload(
        category.id, startDate=(now - timedelta(days=2)).isoformat(), endDate=(now - timedelta(days=1)).isoformat()
    )
    assert client.post("/products/", json=payload, headers=headers).status_code == 400


def test_create_product_unknown_category(client: TestClient, seller):
    _, headers = seller
    response = client.post("/products/", json=product_payload(999), headers=headers)
    assert response.status_code == 404


def test_get_product(client: TestClient, product):
    assert client.get(f"/products/{product['id']}/").json()["title"] == "Vintage camera"
    assert client.get("/products/999/").status_code == 404


def test_update_product(client: TestClient, product, seller, buyer):
    _, seller_headers = seller
    _, buyer_headers = buyer
    url = f"/products/{product['id']}/"

    assert client.put(url, json={"title": "Stolen"}, headers=buyer_headers).status_code == 403

    response = client.put(url, json={"title": "Rare camera", "currentPrice": 1}, headers=seller_headers)
    assert response.status_code == 200
    assert response.json()["title"] == "Rare camera"
    assert response.json()["currentPrice"] == 250


def test_filter_products(client: TestClient, seller, category, product):
    user, headers = seller
    start = utcnow() + timedelta(days=1)
    upcoming = client.post("/products/", json=product_payload(
        category.id, title="Later", startDate=start.isoformat(), endDate=(start + timedelta(days=1)).isoformat()
    ), headers=headers).json()

    assert [p["id"] for p in client.get("/products/", params={"status": "active"}).json()] == [product["id"]]
    assert [p["id"] for p in client.get("/products/", params={"status": "upcoming"}).json()] == [upcoming["id"]]
    assert client.get("/products/", params={"status": "ended"}).json() == []
    assert len(client.get("/products/", params={"sellerId": user["id"], "categoryId": category.id}).json()) == 2
    assert client.get("/products/", params={"sellerId": user["id"] + 100}).json() == []
    assert client.get("/products/", params={"status": "bogus"}).status_code == 400


def test_delete_product_without_bids(client: TestClient, product, seller, buyer):
    _, seller_headers = seller
    _, buyer_headers = buyer
    url = f"/products/{product['id']}/"
    assert client.delete(url, headers=buyer_headers).status_code == 403
    assert client.delete(url, headers=seller_headers).status_code == 204
    assert client.get(url).status_code == 404
    assert client.get(f"/categories/{product['categoryId']}/").json()["itemCount"] == 0


def test_delete_product_with_bids(client: TestClient, product, seller, buyer):
    _, seller_headers = seller
    _, buyer_headers = buyer
    client.post("/bids/", json={"productId": product["id"], "amount": 260}, headers=buyer_headers)

    response = client.delete(f"/products/{product['id']}/", headers=seller_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "has_bids"


# Bids
def test_place_bid(client: TestClient, product, buyer):
    user, headers = buyer
    response = client.post("/bids/", json={"productId": product["id"], "amount": 255}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "bid_below_increment"
    assert response.json()["minimumAmount"] == 260

    response = client.post("/bids/", json={"productId": product["id"], "amount": 260, "notes": "first!"}, headers=headers)
    assert response.status_code == 201
    bid = response.json()
    assert bid["amount"] == 260
    assert bid["userId"] == user["id"]
    assert bid["isAutoBid"] is False
    assert bid["notes"] == "first!"

    updated = client.get(f"/products/{product['id']}/").json()
    assert updated["currentPrice"] == 260
    assert updated["bidCount"] == 1


def test_bid_too_low(client: TestClient, product, buyer):
    _, headers = buyer
    response = client.post("/bids/", json={"productId": product["id"], "amount": 250}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "bid_too_low"


def test_auto_bid(client: TestClient, product, buyer):
    _, headers = buyer
    payload = {"productId": product["id"], "amount": 260, "isAutoBid": True}
    response = client.post("/bids/", json=payload, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_auto_bid"

    response = client.post("/bids/", json={**payload, "maxAmount": 500}, headers=headers)
    assert response.status_code == 201
    assert response.json()["maxAmount"] == 500


def test_self_bid(client: TestClient, product, seller):
    _, headers = seller
    response = client.post("/bids/", json={"productId": product["id"], "amount": 500}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "self_bid"


def test_bid_unknown_product(client: TestClient, buyer):
    _, headers = buyer
    response = client.post("/bids/", json={"productId": 999, "amount": 10}, headers=headers)
    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_bid_unauthenticated(client: TestClient, product):
    response = client.post("/bids/", json={"productId": product["id"], "amount": 260})
    assert response.status_code == 401


def test_bid_malformed(client: TestClient, product, buyer):
    _, headers = buyer
    response = client.post("/bids/", json={"productId": product["id"], "amount": -5}, headers=headers)
    assert response.status_code == 400
    assert response.json()["errors"][0]["loc"][-1] == "amount"


def test_bid_amount_beyond_column_precision(client: TestClient, product, buyer):
    _, headers = buyer
    for amount in ("1e20", "1234567890123", "260.125"):
        response = client.post("/bids/", json={"productId": product["id"], "amount": amount}, headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "validation_error"
        assert response.json()["errors"][0]["loc"][-1] == "amount"
    listed = client.get(f"/products/{product['id']}/").json()
    assert listed["currentPrice"] == 250
    assert listed["bidCount"] == 0


def test_product_price_beyond_column_precision(client: TestClient, seller, category):
    _, headers = seller
    payload = product_payload(category.id, initialPrice="10000000000000")
    response = client.post("/products/", json=payload, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


def test_bid_on_ended_auction(client: TestClient, db: Session, product, buyer):
    _, headers = buyer
    db.query(Product).filter(Product.id == product["id"]).update({
        "start_date": utcnow() - timedelta(days=2),
        "end_date": utcnow() - timedelta(days=1),
    })
    db.commit()

    response = client.post("/bids/", json={"productId": product["id"], "amount": 1000}, headers=headers)
    assert response.status_code == 400
    assert response.json()["code"] == "auction_closed"
    assert client.get(f"/products/{product['id']}/").json()["status"] == "ended"


def test_product_bids_leading_first(client: TestClient, product):
    _, alice = signup(client, "alice")
    _, bob = signup(client, "bob")
    for headers, amount in ((alice, 260), (bob, 300), (alice, 450)):
        assert client.post("/bids/", json={"productId": product["id"], "amount": amount}, headers=headers).status_code == 201

    bids = client.get(f"/products/{product['id']}/bids/").json()
    assert [b["amount"] for b in bids] == [450, 300, 260]
    assert client.get("/products/999/bids/").status_code == 404


def test_user_bids(client: TestClient, product, buyer, admin):
    user, headers = buyer
    _, admin_headers = admin
    _, other_headers = signup(client, "other")
    client.post("/bids/", json={"productId": product["id"], "amount": 260}, headers=headers)
    client.post("/bids/", json={"productId": product["id"], "amount": 300}, headers=headers)

    url = f"/users/{user['id']}/bids/"
    assert client.get(url, headers=other_headers).status_code == 403
    assert [b["amount"] for b in client.get(url, headers=headers).json()] == [300, 260]
    assert len(client.get(url, headers=admin_headers).json()) == 2
    assert [b["amount"] for b in client.get("/bids/", headers=headers).json()] == [300, 260]
    assert client.get("/bids/", headers=other_headers).json() == []


def test_get_bid(client: TestClient, product, buyer, seller):
    _, headers = buyer
    _, seller_headers = seller
    bid = client.post("/bids/", json={"productId": product["id"], "amount": 260}, headers=headers).json()

    assert client.get(f"/bids/{bid['id']}/", headers=headers).json()["amount"] == 260
    assert client.get(f"/bids/{bid['id']}/", headers=seller_headers).status_code == 403
    assert client.get("/bids/999/", headers=headers).status_code == 404


# Watchlist
def test_watchlist(client: TestClient, product, buyer):
    user, headers = buyer
    _, other_headers = signup(client, "other")

    response = client.post("/watchlist/", json={"productId": product["id"]}, headers=headers)
    assert response.status_code == 201
    assert client.post("/watchlist/", json={"productId": product["id"]}, headers=headers).status_code == 400
    assert client.post("/watchlist/", json={"productId": 999}, headers=headers).status_code == 404

    url = f"/users/{user['id']}/watchlist/"
    assert client.get(url, headers=other_headers).status_code == 403
    items = client.get(url, headers=headers).json()
    assert len(items) == 1
    assert items[0]["product"]["title"] == "Vintage camera"

    assert client.delete(f"/watchlist/{product['id']}/", headers=headers).status_code == 204
    assert client.delete(f"/watchlist/{product['id']}/", headers=headers).status_code == 404
    assert client.get(url, headers=headers).json() == []


# Lifecycle
def test_sweep(client: TestClient, db: Session, product, admin, buyer):
    _, admin_headers = admin
    _, buyer_headers = buyer
    db.query(Product).filter(Product.id == product["id"]).update({
        "start_date": utcnow() - timedelta(days=2),
        "end_date": utcnow() - timedelta(days=1),
    })
    db.commit()

    assert client.post("/admin/sweep", headers=buyer_headers).status_code == 403
    response = client.post("/admin/sweep", headers=admin_headers)
    assert response.status_code == 200
    assert response.json() == {"updated": 1}
    db.expire_all()
    assert db.get(Product, product["id"]).status == "ended"


def test_mark_sold(client: TestClient, db: Session, product, seller, buyer):
    _, seller_headers = seller
    _, buyer_headers = buyer
    url = f"/products/{product['id']}/sold"
    client.post("/bids/", json={"productId": product["id"], "amount": 260}, headers=buyer_headers)

    response = client.post(url, headers=seller_headers)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_transition"

    db.query(Product).filter(Product.id == product["id"]).update({"end_date": utcnow() - timedelta(minutes=1)})
    db.commit()

    assert client.post(url, headers=buyer_headers).status_code == 403
    response = client.post(url, headers=seller_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "sold"
    assert response.json()["isSold"] is True
    assert db.query(Bid).count() == 1
    assert client.get("/products/", params={"status": "sold"}).json()[0]["id"] == product["id"]
    assert Decimal(str(response.json()["currentPrice"])) == Decimal("260")
