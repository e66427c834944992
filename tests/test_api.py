import pytest
from fastapi.testclient import TestClient

from conftest import SHOP
from groupbuy.main import app


@pytest.fixture
def client(service):
    app.state.order_service = service
    yield TestClient(app)
    app.state.order_service = None


def order_body(items, **extra):
    body = {"shopId": SHOP, "items": items,
            "customer": {"name": "Lin", "phone": "0912345678", "shipping": "711", "last5": "54321"}}
    body.update(extra)
    return body


def test_health(client):
    assert client.get("/health").json() == {"ok": True}


def test_submit_order(client):
    resp = client.post("/api/orders", json=order_body(
        [{"productId": "P", "qty": 2, "lineTotal": 1}, {"productId": "Q", "variant": "Red", "qty": 1}],
        couponId="SPRING"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "success"

    order = client.get(f"/api/orders/{body['orderId']}").json()
    assert order["total_amount"] == 590
    assert order["coupon_id"] == "SPRING"
    assert order["status"] == "pending_payment"
    assert order["items"][0]["line_total"] == 1


def test_insufficient_stock_names_line(client):
    resp = client.post("/api/orders", json=order_body(
        [{"productId": "P", "qty": 1}, {"productId": "Q", "variant": "Red", "qty": 3}]))
    assert resp.status_code == 409
    body = resp.json()
    assert body["status"] == "error"
    assert body["reason"] == "INSUFFICIENT_STOCK"
    assert body["lineIndex"] == 1
    assert "Red" in body["message"]


@pytest.mark.parametrize("qty", ["two", 0, 1.5])
def test_invalid_quantity(client, qty):
    resp = client.post("/api/orders", json=order_body([{"productId": "P", "qty": qty}]))
    assert resp.status_code == 400
    assert resp.json()["reason"] == "INVALID_QUANTITY"


def test_unknown_product(client):
    resp = client.post("/api/orders", json=order_body([{"productId": "NOPE", "qty": 1}]))
    assert resp.status_code == 404
    assert resp.json()["reason"] == "NOT_FOUND"


def test_product_snapshot(client):
    body = client.get("/api/products/Q").json()
    assert body["remaining"] == 5
    assert body["target_reached"] is False
    assert [v["name"] for v in body["variants"]] == ["Red", "Blue"]
    assert client.get("/api/products/GONE").status_code == 404


def test_status_update(client):
    order_id = client.post("/api/orders", json=order_body([{"productId": "P", "qty": 1}])).json()["orderId"]

    resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "fulfilled"})
    assert resp.status_code == 409

    assert client.patch("/api/orders/19700101-0000/status", json={"status": "cancelled"}).status_code == 404
    assert client.get("/api/orders/19700101-0000").status_code == 404


@pytest.mark.parametrize("body, field", [
    ({"shopId": SHOP, "items": [{"productId": "P", "qty": 1}]}, "customer"),
    ({"shopId": SHOP, "customer": {"name": "Lin", "phone": "0912345678"}}, "items"),
    ({"shopId": SHOP, "items": "P", "customer": {"name": "Lin", "phone": "0912345678"}}, "items"),
])
def test_malformed_order_body(client, body, field):
    resp = client.post("/api/orders", json=body)
    assert resp.status_code == 400
    payload = resp.json()
    assert payload["status"] == "error"
    assert payload["reason"] == "INVALID_REQUEST"
    assert field in payload["message"]
    assert "detail" not in payload


def test_unknown_status_value(client):
    order_id = client.post("/api/orders", json=order_body([{"productId": "P", "qty": 1}])).json()["orderId"]
    resp = client.patch(f"/api/orders/{order_id}/status", json={"status": "shipped"})
    assert resp.status_code == 400
    assert resp.json()["reason"] == "INVALID_REQUEST"
