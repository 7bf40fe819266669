import json
from decimal import Decimal

from fastapi.testclient import TestClient

from commerce_core.api.deps import get_catalog
from commerce_core.infrastructure.gateway import sign_payload
from commerce_core.main import app
from tests.conftest import VISA, WEBHOOK_SECRET, headers_for

ORDER_BODY = {
    "line_items": [{"product_id": "prod-1", "sku": "MUG-1", "quantity": 2, "price": "25.00"}],
    "discounts": [{"code": "TEN", "type": "percentage", "value": "10"}],
}


def create_order(client, principal):
    response = client.post("/orders", json=ORDER_BODY, headers=headers_for(principal))
    assert response.status_code == 201
    return response.json()


def pay(client, principal, order):
    headers = headers_for(principal)
    method = client.post("/payments/methods", json={"card": VISA}, headers=headers).json()
    intent = client.post("/payments/intents", json={
        "order_id": order["id"], "amount": order["total_price"], "payment_method_id": method["id"],
    }, headers=headers)
    assert intent.status_code == 201
    confirmed = client.post("/payments/confirm", json={
        "payment_intent_id": intent.json()["payment_intent_id"],
    }, headers=headers)
    assert confirmed.status_code == 200
    return confirmed.json()


class TestOrdersApi:
    def test_create_order(self, client, customer):
        body = create_order(client, customer)
        assert Decimal(body["total_price"]) == Decimal("45.00")
        assert Decimal(body["subtotal_price"]) == Decimal("50.00")
        assert body["status"] == "pending"
        assert body["email"] == customer.email
        assert body["order_number"].startswith("ORD-")
        assert len(body["line_items"]) == 1
        assert Decimal(body["discounts"][0]["amount"]) == Decimal("5.00")

    def test_identity_required(self, client):
        response = client.post("/orders", json=ORDER_BODY)
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    def test_invalid_quantity_is_400(self, client, customer):
        body = {"line_items": [{"product_id": "prod-1", "quantity": 0, "price": "10"}]}
        response = client.post("/orders", json=body, headers=headers_for(customer))
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_malformed_body_is_422(self, client, customer):
        response = client.post("/orders", json={"line_items": "nope"}, headers=headers_for(customer))
        assert response.status_code == 422

    def test_foreign_order_forbidden(self, client, customer, other_customer):
        order = create_order(client, customer)
        response = client.get(f"/orders/{order['id']}", headers=headers_for(other_customer))
        assert response.status_code == 403
        assert response.json()["code"] == "ACCESS_DENIED"

    def test_missing_order(self, client, customer):
        response = client.get("/orders/999", headers=headers_for(customer))
        assert response.status_code == 404
        assert response.json() == {"error": "Order not found", "code": "ORDER_NOT_FOUND"}

    def test_my_orders(self, client, customer, other_customer):
        create_order(client, customer)
        create_order(client, customer)
        create_order(client, other_customer)
        body = client.get("/orders/mine?limit=1", headers=headers_for(customer)).json()
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "pages": 2}
        assert len(body["orders"]) == 1

    def test_cancel_and_events(self, client, customer):
        order = create_order(client, customer)
        response = client.put(
            f"/orders/{order['id']}/cancel", json={"reason": "duplicate"}, headers=headers_for(customer)
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        events = client.get(f"/orders/{order['id']}/events", headers=headers_for(customer)).json()
        assert [e["event_type"] for e in events] == ["created", "cancelled"]
        assert events[1]["metadata"] == {"reason": "duplicate"}

    def test_cancel_shipped_conflicts(self, client, customer, admin):
        order = create_order(client, customer)
        for status in ("confirmed", "processing", "shipped"):
            response = client.put(
                f"/admin/orders/{order['id']}", json={"status": status}, headers=headers_for(admin)
            )
            assert response.status_code == 200
        response = client.put(f"/orders/{order['id']}/cancel", headers=headers_for(customer))
        assert response.status_code == 409
        assert response.json()["code"] == "ORDER_NOT_CANCELLABLE"

    def test_illegal_admin_transition(self, client, customer, admin):
        order = create_order(client, customer)
        response = client.put(
            f"/admin/orders/{order['id']}", json={"status": "delivered"}, headers=headers_for(admin)
        )
        assert response.status_code == 409
        assert response.json()["code"] == "INVALID_STATUS_TRANSITION"

    def test_admin_null_fulfillment_rejected(self, client, customer, admin):
        order = create_order(client, customer)
        response = client.put(
            f"/admin/orders/{order['id']}", json={"fulfillment_status": None}, headers=headers_for(admin)
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_admin_routes_need_admin(self, client, customer):
        assert client.get("/admin/orders", headers=headers_for(customer)).status_code == 403
        response = client.put("/admin/orders/1", json={"notes": "x"}, headers=headers_for(customer))
        assert response.status_code == 403

    def test_admin_listing(self, client, customer, admin):
        create_order(client, customer)
        body = client.get("/admin/orders?status=pending", headers=headers_for(admin)).json()
        assert body["pagination"]["total"] == 1


class TestCartApi:
    def test_cart_flow(self, client, customer):
        headers = headers_for(customer)
        assert client.get("/cart", headers=headers).json() is None

        added = client.post("/cart/add", json={"product_id": "prod-P", "quantity": 2}, headers=headers)
        assert added.status_code == 201
        client.post("/cart/add", json={"product_id": "prod-P", "quantity": 3}, headers=headers)
        cart = client.get("/cart", headers=headers).json()
        assert cart["item_count"] == 5
        assert len(cart["line_items"]) == 1

        item_id = added.json()["id"]
        updated = client.put(f"/cart/update/{item_id}", json={"quantity": 1}, headers=headers)
        assert updated.json()["quantity"] == 1

        assert client.delete(f"/cart/remove/{item_id}", headers=headers).status_code == 204
        assert client.delete("/cart/clear", headers=headers).json() == {"removed": 0}

    def test_foreign_item(self, client, customer, other_customer):
        added = client.post("/cart/add", json={"product_id": "prod-P"}, headers=headers_for(customer)).json()
        response = client.delete(f"/cart/remove/{added['id']}", headers=headers_for(other_customer))
        assert response.status_code == 404


class TestPaymentsApi:
    def test_pay_and_refund(self, client, customer, admin):
        order = create_order(client, customer)
        txn = pay(client, customer, order)
        assert txn["status"] == "succeeded"
        assert client.get(f"/orders/{order['id']}", headers=headers_for(customer)).json()["financial_status"] == "paid"

        too_much = client.post("/payments/refunds", json={"transaction_id": txn["id"], "amount": "50.00"},
                               headers=headers_for(admin))
        assert too_much.status_code == 400
        assert too_much.json()["code"] == "REFUND_EXCEEDS_AVAILABLE"

        refund = client.post("/payments/refunds", json={"transaction_id": txn["id"], "amount": "15.00"},
                             headers=headers_for(admin))
        assert refund.status_code == 201
        assert refund.json()["type"] == "partial_refund"
        refreshed = client.get(f"/orders/{order['id']}", headers=headers_for(customer)).json()
        assert refreshed["financial_status"] == "partially_refunded"

    def test_customer_cannot_refund(self, client, customer):
        order = create_order(client, customer)
        txn = pay(client, customer, order)
        response = client.post("/payments/refunds", json={"transaction_id": txn["id"]}, headers=headers_for(customer))
        assert response.status_code == 403

    def test_payment_methods(self, client, customer):
        headers = headers_for(customer)
        first = client.post("/payments/methods", json={"card": VISA}, headers=headers).json()
        second = client.post("/payments/methods", json={"card": VISA}, headers=headers).json()
        assert first["is_default"] and not second["is_default"]

        promoted = client.put(f"/payments/methods/{second['id']}/default", headers=headers).json()
        assert promoted["is_default"]
        methods = client.get("/payments/methods", headers=headers).json()
        assert [m["id"] for m in methods if m["is_default"]] == [second["id"]]

        assert client.delete(f"/payments/methods/{first['id']}", headers=headers).status_code == 204
        assert [m["id"] for m in client.get("/payments/methods", headers=headers).json()] == [second["id"]]

    def test_history(self, client, customer, other_customer):
        pay(client, customer, create_order(client, customer))
        body = client.get("/payments/history", headers=headers_for(customer)).json()
        assert body["pagination"]["total"] == 1
        assert client.get("/payments/history", headers=headers_for(other_customer)).json()["transactions"] == []


class TestWebhookApi:
    def intent(self, client, customer):
        order = create_order(client, customer)
        response = client.post("/payments/intents", json={"order_id": order["id"], "amount": "45.00"},
                               headers=headers_for(customer))
        return order, response.json()

    def test_signed_event_settles(self, client, customer):
        order, intent = self.intent(client, customer)
        payload = json.dumps({
            "id": "evt_1", "type": "payment_intent.succeeded",
            "data": {"object": {"id": intent["payment_intent_id"]}},
        }).encode()
        headers = {"Payment-Signature": sign_payload(payload, WEBHOOK_SECRET)}

        first = client.post("/payments/webhook/mock", content=payload, headers=headers)
        assert first.status_code == 200
        assert first.json() == {"received": True, "duplicate": False, "event_id": "evt_1"}
        again = client.post("/payments/webhook/mock", content=payload, headers=headers)
        assert again.json()["duplicate"] is True

        body = client.get(f"/orders/{order['id']}", headers=headers_for(customer)).json()
        assert body["financial_status"] == "paid"
        assert body["status"] == "confirmed"

    def test_stripe_style_header(self, client):
        payload = json.dumps({"id": "evt_2", "type": "ping", "data": {}}).encode()
        response = client.post(
            "/payments/webhook/mock",
            content=payload,
            headers={"Stripe-Signature": sign_payload(payload, WEBHOOK_SECRET)},
        )
        assert response.status_code == 200

    def test_bad_signature(self, client):
        payload = json.dumps({"id": "evt_3", "type": "ping"}).encode()
        response = client.post(
            "/payments/webhook/mock",
            content=payload,
            headers={"Payment-Signature": sign_payload(payload, "whsec_other")},
        )
        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"

    def test_unknown_provider(self, client):
        response = client.post("/payments/webhook/paypal", content=b"{}")
        assert response.status_code == 404
        assert response.json()["code"] == "PROVIDER_NOT_FOUND"


def test_unexpected_errors_are_generic_500(client, customer):
    class BrokenCatalog:
        def fetch_product(self, product_id):
            raise RuntimeError("boom")

        def fetch_variant(self, product_id, variant_id):
            raise RuntimeError("boom")

    app.dependency_overrides[get_catalog] = BrokenCatalog
    unsafe = TestClient(app, raise_server_exceptions=False)
    response = unsafe.post("/orders", json=ORDER_BODY, headers=headers_for(customer))
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "code": "INTERNAL_ERROR"}


def test_request_id_echoed(client):
    response = client.get("/", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
