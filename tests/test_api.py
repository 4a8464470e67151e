# tests/test_api.py
"""
HTTP surface: camelCase checkout bodies, header identity, and error bodies.

The app's service container is swapped for one built on mongomock through
FastAPI's dependency overrides; the lifespan (real database) never runs.
"""
import pytest
from fastapi.testclient import TestClient

from conftest import ADDRESS, BUYER
from main import app, get_services

BUYER_HEADERS = {"X-User-Id": BUYER}
ADMIN_HEADERS = {"X-User-Id": "admin-1", "X-User-Role": "admin"}


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def seller_headers(seller_id):
    return {"X-User-Id": f"user-{seller_id}", "X-User-Role": "seller", "X-Seller-Id": seller_id}


def test_identity_is_required(client):
    assert client.get("/api/cart").status_code == 401


def test_checkout_with_camel_case_body(client, market):
    a, b, _, _ = market.two_seller_cart()
    market.fund(100)

    res = client.post(
        "/api/orders",
        json={"shippingDetails": ADDRESS, "paymentMethod": "cod", "walletCoinsUsed": 40},
        headers=BUYER_HEADERS,
    )

    assert res.status_code == 200
    body = res.json()
    assert body["total"] == 1060
    assert [s["seller_id"] for s in body["sub_orders"]] == [a, b]

    listed = client.get("/api/orders", headers=BUYER_HEADERS).json()
    assert [o["id"] for o in listed] == [body["id"]]


def test_insufficient_balance_body(client, market):
    market.two_seller_cart()
    market.fund(30, pool="redeemed_balance")

    res = client.post(
        "/api/orders", json={"shipping_details": ADDRESS, "redeem_coins_used": 50}, headers=BUYER_HEADERS
    )

    assert res.status_code == 402
    detail = res.json()["detail"]
    assert detail["code"] == "insufficient_balance"
    assert detail["requested"] == 50
    assert detail["available"] == 30


def test_empty_cart_body(client):
    res = client.post("/api/orders", json={"shippingDetails": ADDRESS}, headers=BUYER_HEADERS)
    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "empty_cart"


def test_cart_routes(client, market):
    s = market.seller()
    p = market.product(s, 100)

    added = client.post("/api/cart", json={"productId": p, "quantity": 2}, headers=BUYER_HEADERS).json()
    client.put(f"/api/cart/{added['id']}", json={"quantity": 3}, headers=BUYER_HEADERS)

    cart = client.get("/api/cart", headers=BUYER_HEADERS).json()
    assert [i["quantity"] for i in cart] == [3]

    assert client.delete(f"/api/cart/{added['id']}", headers=BUYER_HEADERS).json()["success"] is True
    assert client.get("/api/cart", headers=BUYER_HEADERS).json() == []


def test_seller_updates_own_sub_order(client, market):
    a, b, _, _ = market.two_seller_cart()
    order = market.place()
    sub_a = order["sub_orders"][0]["id"]

    res = client.put(f"/api/sub-orders/{sub_a}/status", json={"status": "processing"}, headers=seller_headers(a))
    assert res.status_code == 200
    assert res.json()["status"] == "processing"

    res = client.put(f"/api/sub-orders/{sub_a}/status", json={"status": "pending"}, headers=seller_headers(b))
    assert res.status_code == 403

    res = client.put(f"/api/sub-orders/{sub_a}/status", json={"status": "delivered"}, headers=seller_headers(a))
    assert res.status_code == 409
    assert res.json()["detail"]["code"] == "invalid_status_transition"

    # seller B only sees its own slice
    seen = client.get(f"/api/orders/{order['id']}", headers=seller_headers(b)).json()
    assert [s["seller_id"] for s in seen["sub_orders"]] == [b]


def test_buyer_cancels_and_reads_invoice(client, market):
    market.two_seller_cart()
    order = market.place()

    res = client.post(f"/api/orders/{order['id']}/cancel", headers=BUYER_HEADERS)
    assert res.json()["status"] == "cancelled"

    invoice = client.get(f"/api/orders/{order['id']}/invoice", headers=BUYER_HEADERS).json()
    assert invoice["totals"]["payable"] == 1100
    assert client.get(f"/api/orders/{order['id']}/invoice", headers={"X-User-Id": "stranger"}).status_code == 403


def test_wallet_routes(client):
    topup = {"user_id": BUYER, "amount": 75}
    assert client.post("/api/wallet/topup", json=topup, headers=BUYER_HEADERS).status_code == 403

    res = client.post("/api/wallet/topup", json=topup, headers=ADMIN_HEADERS)
    assert res.status_code == 200
    assert res.json()["balance"] == 75

    assert client.get("/api/wallet/balance", headers=BUYER_HEADERS).json()["balance"] == 75
    txs = client.get("/api/wallet/transactions", headers=BUYER_HEADERS).json()
    assert [t["reason_code"] for t in txs] == ["top_up"]


def test_top_up_note_is_stored(client):
    topup = {"user_id": BUYER, "amount": 20, "note": "refund for damaged parcel"}
    assert client.post("/api/wallet/topup", json=topup, headers=ADMIN_HEADERS).status_code == 200

    txs = client.get("/api/wallet/transactions", headers=BUYER_HEADERS).json()
    assert txs[0]["note"] == "refund for damaged parcel"


def test_preview_route(client, market):
    market.two_seller_cart()
    res = client.post("/api/checkout/preview", json={"shippingDetails": ADDRESS}, headers=BUYER_HEADERS)
    assert res.json()["total"] == 1100


def test_outbox_admin_routes(client):
    assert client.post("/api/admin/outbox/drain", headers=BUYER_HEADERS).status_code == 403
    res = client.post("/api/admin/outbox/drain", headers=ADMIN_HEADERS)
    assert res.json() == {"done": 0, "failed": 0, "retry": 0}
    assert client.get("/api/admin/outbox/failed", headers=ADMIN_HEADERS).json() == []
