"""Tests for the FastAPI API."""

from tests.conftest import OWNER_EMAIL, FailingMailer, razorpay_event, razorpay_signature


def order_body(product_id, quantity=1, payment_method="cod"):
    return {
        "items": [{"product_id": product_id, "quantity": quantity}],
        "customer": {
            "name": "Asha Rao",
            "phone": "9999999999",
            "email": "asha@example.com",
            "address": "12 MG Road",
            "postal_code": "560001",
        },
        "payment_method": payment_method,
    }


class TestHealth:
    def test_root(self, api_client):
        response = api_client.get("/")
        assert response.status_code == 200
        assert response.json() == {"message": "Storefront API is running"}


class TestAuth:
    def test_register_sends_welcome_and_login_works(self, api_client, mailer):
        response = api_client.post(
            "/api/auth/register", json={"name": "Asha", "email": "Asha@Example.com", "password": "secret1"}
        )
        assert response.status_code == 200
        assert response.json()["user"]["email"] == "asha@example.com"
        assert mailer.subjects() == ["Welcome to Test Store!"]

        response = api_client.post("/api/auth/login", json={"email": "asha@example.com", "password": "secret1"})
        assert response.status_code == 200
        assert response.json()["user"]["role"] == "customer"

    def test_duplicate_registration(self, api_client):
        body = {"name": "Asha", "email": "asha@example.com", "password": "secret1"}
        api_client.post("/api/auth/register", json=body)
        response = api_client.post("/api/auth/register", json=body)
        assert response.status_code == 400

    def test_bad_password(self, api_client):
        api_client.post("/api/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "secret1"})
        response = api_client.post("/api/auth/login", json={"email": "asha@example.com", "password": "wrong!!"})
        assert response.status_code == 400


class TestOrders:
    def test_place_order(self, api_client, add_product, mailer):
        product_id = add_product(price=250.0, stock=5)
        response = api_client.post("/api/orders", json=order_body(product_id, quantity=2))
        assert response.status_code == 201
        data = response.json()
        assert data["total"] == 575.0
        assert data["status"] == "pending"
        assert data["order_id"].startswith("ORD-")
        assert [m["to"] for m in mailer.sent] == ["asha@example.com", OWNER_EMAIL]

    def test_insufficient_stock_is_conflict(self, api_client, add_product):
        product_id = add_product(stock=1)
        response = api_client.post("/api/orders", json=order_body(product_id, quantity=3))
        assert response.status_code == 409
        assert response.json()["error_type"] == "InsufficientStockError"

    def test_unknown_product_is_not_found(self, api_client):
        response = api_client.post("/api/orders", json=order_body("missing"))
        assert response.status_code == 404

    def test_zero_quantity_is_rejected(self, api_client, add_product):
        product_id = add_product()
        response = api_client.post("/api/orders", json=order_body(product_id, quantity=0))
        assert response.status_code == 422

    def test_customer_sees_own_orders(self, api_client, add_product):
        registered = api_client.post(
            "/api/auth/register", json={"name": "Asha", "email": "asha@example.com", "password": "secret1"}
        ).json()
        headers = {"Authorization": f"Bearer {registered['token']}"}
        product_id = add_product()
        placed = api_client.post("/api/orders", json=order_body(product_id), headers=headers).json()
        assert placed["customer_id"] == registered["user"]["id"]

        mine = api_client.get("/api/orders/mine", headers=headers).json()
        assert [o["id"] for o in mine] == [placed["id"]]

        # Account orders are hidden from anonymous callers.
        assert api_client.get(f"/api/orders/{placed['id']}").status_code == 404
        assert api_client.get(f"/api/orders/{placed['id']}", headers=headers).status_code == 200

        cancelled = api_client.post(f"/api/orders/{placed['id']}/cancel", headers=headers)
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

    def test_cancel_requires_login(self, api_client, add_product):
        product_id = add_product()
        placed = api_client.post("/api/orders", json=order_body(product_id)).json()
        assert api_client.post(f"/api/orders/{placed['id']}/cancel").status_code == 401

    def test_guest_order_hides_customer_from_anonymous_callers(self, api_client, admin_headers, add_product):
        product_id = add_product(price=250.0, stock=5)
        placed = api_client.post("/api/orders", json=order_body(product_id, quantity=2)).json()

        public = api_client.get(f"/api/orders/{placed['id']}")
        assert public.status_code == 200
        data = public.json()
        assert data["status"] == "pending"
        assert data["total"] == 575.0
        assert "customer" not in data
        assert "payment_details" not in data

        full = api_client.get(f"/api/orders/{placed['id']}", headers=admin_headers).json()
        assert full["customer"]["email"] == "asha@example.com"


class TestAdmin:
    def test_admin_only(self, api_client, add_product):
        response = api_client.get("/api/admin/orders")
        assert response.status_code == 401

        from main import create_token

        token = create_token({"id": "c1", "email": "c@example.com", "name": "C", "role": "customer"})
        response = api_client.get("/api/admin/orders", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 403

    def test_status_update_and_validation(self, api_client, admin_headers, add_product):
        product_id = add_product()
        placed = api_client.post("/api/orders", json=order_body(product_id)).json()
        url = f"/api/admin/orders/{placed['id']}/status"

        assert api_client.put(url, json={"status": "shipped"}, headers=admin_headers).json()["status"] == "shipped"
        response = api_client.put(url, json={"status": "paid"}, headers=admin_headers)
        assert response.status_code == 400

    def test_stats(self, api_client, admin_headers, add_product):
        product_id = add_product(price=250.0, stock=5)
        api_client.post("/api/orders", json=order_body(product_id, quantity=2))
        stats = api_client.get("/api/admin/orders/stats", headers=admin_headers).json()
        assert stats["total_orders"] == 1
        assert stats["total_revenue"] == 575.0

    def test_cod_refund(self, api_client, admin_headers, add_product):
        product_id = add_product()
        placed = api_client.post("/api/orders", json=order_body(product_id)).json()
        url = f"/api/admin/orders/{placed['id']}/refund"
        response = api_client.post(url, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["message"] == "Marked as refunded (COD)"
        assert api_client.post(url, headers=admin_headers).status_code == 409

    def test_resend_confirmation(self, api_client, admin_headers, mailer, add_product):
        product_id = add_product()
        placed = api_client.post("/api/orders", json=order_body(product_id)).json()
        mailer.sent.clear()
        response = api_client.post(f"/api/admin/orders/{placed['id']}/resend-confirmation", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"success": True, "message_id": "<msg-1@test>"}
        assert mailer.sent[0]["to"] == "asha@example.com"

    def test_resend_confirmation_surfaces_delivery_failure(self, api_client, admin_headers, add_product):
        from main import app, get_mailer

        product_id = add_product()
        placed = api_client.post("/api/orders", json=order_body(product_id)).json()
        app.dependency_overrides[get_mailer] = FailingMailer
        response = api_client.post(f"/api/admin/orders/{placed['id']}/resend-confirmation", headers=admin_headers)
        assert response.status_code == 502
        assert response.json()["error_type"] == "EmailDeliveryError"

    def test_product_create_and_update(self, api_client, admin_headers):
        created = api_client.post(
            "/api/admin/products", json={"title": "Kurta", "price": 250.0, "stock": 3}, headers=admin_headers
        )
        assert created.status_code == 201
        product_id = created.json()["id"]

        updated = api_client.put(f"/api/admin/products/{product_id}", json={"stock": 7}, headers=admin_headers)
        assert updated.json()["stock"] == 7
        assert api_client.get(f"/api/products/{product_id}").json()["title"] == "Kurta"
        assert api_client.put("/api/admin/products/missing", json={"stock": 1}, headers=admin_headers).status_code == 404


class TestWebhookEndpoint:
    def test_capture(self, api_client, add_product):
        product_id = add_product(price=250.0, stock=5)
        placed = api_client.post("/api/orders", json=order_body(product_id, quantity=2, payment_method="razorpay")).json()
        body = razorpay_event("payment.captured", placed["id"])
        response = api_client.post(
            "/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": razorpay_signature(body), "Content-Type": "application/json"},
        )
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_bad_signature(self, api_client):
        body = razorpay_event("payment.captured", "whatever")
        response = api_client.post("/webhooks/razorpay", content=body, headers={"X-Razorpay-Signature": "0" * 64})
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid signature"

    def test_unknown_provider(self, api_client):
        response = api_client.post("/webhooks/paypal", content=b"{}")
        assert response.status_code == 404

    def test_unknown_order(self, api_client):
        body = razorpay_event("payment.captured", "65f0c0ffee0000000000beef")
        response = api_client.post("/webhooks/razorpay", content=body, headers={"X-Razorpay-Signature": razorpay_signature(body)})
        assert response.status_code == 404
