import pytest

from app.core_settings import get_settings
from conftest import PAYMENT_URL, inline_details, successful_transaction

ORDER_BODY = {
    "products": [
        {"product": "prod-shirt", "quantity": 2, "size": "M", "color": "white"},
        {"product": "prod-shoe", "quantity": 1, "size": "42", "color": "brown"},
    ],
    "userDetails": inline_details(),
    "paymentType": "payment_on_delivery",
}


def place(client, headers, **overrides):
    resp = client.post("/checkouts/", headers=headers, json={**ORDER_BODY, **overrides})
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.fixture
def order(client, user_headers):
    return place(client, user_headers)["order"]


@pytest.fixture
def online(client, user_headers):
    return place(client, user_headers, paymentType="online_payment")


def test_root_and_info(client):
    assert client.get("/").json()["service"] == "checkout-service"
    assert client.get("/info").json()["endpoints"]["webhook"] == "/checkouts/webhook"


def test_liveness(client):
    assert client.get("/health").json()["status"] == "pass"
    assert client.get("/health/live").json() == {"status": "alive"}


def test_create_checkout(client, user_headers):
    body = place(client, user_headers)

    order = body["order"]
    assert body["paymentUrl"] is None
    assert order["orderNumber"].startswith("ORD-")
    assert order["user"] == "user-1"
    assert order["totalAmount"] == 5000.0
    assert order["paymentStatus"] == "pending"
    assert order["deliveryStatus"] == "pending"
    assert order["userDetails"]["firstName"] == "Ada"
    assert order["products"][1]["price"] == 2000.0
    assert order["deliveryStatusTimeline"][0]["status"] == "pending"


def test_create_online_checkout(online):
    assert online["paymentUrl"] == PAYMENT_URL
    assert online["order"]["paymentReference"].startswith("ref_")
    assert online["order"]["deliveryStatus"] == "under_process"


def test_guest_checkout(client):
    order = place(client, {})["order"]

    assert order["user"] is None


def test_invalid_request_is_400(client, user_headers):
    resp = client.post("/checkouts/", headers=user_headers, json={**ORDER_BODY, "paymentType": "barter"})

    assert resp.status_code == 400
    assert resp.json()["error"] == "ValidationError"
    assert "payment type" in resp.json()["detail"]


def test_unknown_product_is_404(client, user_headers):
    resp = client.post("/checkouts/", headers=user_headers, json={
        **ORDER_BODY, "products": [{"product": "ghost", "quantity": 1, "size": "M", "color": "red"}],
    })

    assert resp.status_code == 404
    assert resp.json()["detail"] == "Product not found: ghost"


def test_gateway_failure_is_502(client, user_headers, gateway):
    from app.domain.errors import UpstreamServiceError

    gateway.init_error = UpstreamServiceError("Payment gateway unreachable")
    resp = client.post("/checkouts/", headers=user_headers, json={**ORDER_BODY, "paymentType": "online_payment"})

    assert resp.status_code == 502
    assert resp.json()["error"] == "PaymentInitError"


def test_bad_token_is_401(client):
    resp = client.post("/checkouts/", headers={"Authorization": "Bearer not-a-jwt"}, json=ORDER_BODY)

    assert resp.status_code == 401
    assert resp.json()["detail"] == "Invalid token"


def test_my_orders(client, user_headers, other_user_headers, admin_headers, order):
    place(client, other_user_headers)

    mine = client.get("/checkouts/me", headers=user_headers).json()
    assert [o["id"] for o in mine] == [order["id"]]
    assert client.get("/checkouts/me/delivered", headers=user_headers).json() == []

    client.put(f"/checkouts/{order['id']}/delivery-status", headers=admin_headers,
               json={"deliveryStatus": "delivered"})
    delivered = client.get("/checkouts/me/delivered", headers=user_headers).json()
    assert [o["id"] for o in delivered] == [order["id"]]


def test_my_orders_require_login(client):
    assert client.get("/checkouts/me").status_code == 401


def test_owner_delete(client, user_headers, other_user_headers, admin_headers, order):
    assert client.delete(f"/checkouts/me/{order['id']}", headers=other_user_headers).status_code == 404

    assert client.delete(f"/checkouts/me/{order['id']}", headers=user_headers).status_code == 204
    assert client.get(f"/checkouts/{order['id']}", headers=admin_headers).status_code == 404


def test_public_status(client, order):
    resp = client.get(f"/checkouts/status/{order['id']}")

    assert resp.status_code == 200
    assert resp.json() == {
        "id": order["id"],
        "orderNumber": order["orderNumber"],
        "paymentStatus": "pending",
        "deliveryStatus": "pending",
        "estimatedDeliveryDate": order["estimatedDeliveryDate"],
    }


def test_admin_routes_require_admin(client, user_headers, order):
    assert client.get("/checkouts/").status_code == 401
    assert client.get("/checkouts/", headers=user_headers).status_code == 403
    assert client.get(f"/checkouts/{order['id']}", headers=user_headers).status_code == 403
    assert client.put(f"/checkouts/{order['id']}/delivery-status", headers=user_headers,
                      json={"deliveryStatus": "shipped"}).status_code == 403


def test_admin_list_and_get(client, admin_headers, order):
    assert [o["id"] for o in client.get("/checkouts/", headers=admin_headers).json()] == [order["id"]]
    assert client.get(f"/checkouts/{order['id']}", headers=admin_headers).json()["orderNumber"] == order["orderNumber"]
    assert client.get("/checkouts/4242", headers=admin_headers).status_code == 404


def test_search(client, admin_headers, user_headers, order):
    place(client, user_headers, userDetails=inline_details(firstName="Chidi", email="chidi@example.org"))

    by_email = client.get("/checkouts/search", headers=admin_headers, params={"email": "ADA@EXAMPLE"}).json()
    assert [o["id"] for o in by_email] == [order["id"]]
    by_name = client.get("/checkouts/search", headers=admin_headers, params={"firstName": "chi"}).json()
    assert [o["userDetails"]["firstName"] for o in by_name] == ["Chidi"]
    by_status = client.get("/checkouts/search", headers=admin_headers, params={"paymentStatus": "pending"}).json()
    assert len(by_status) == 2


def test_webhook_confirms_payment(client, gateway, admin_headers, sink, online):
    reference = online["order"]["paymentReference"]
    gateway.transactions[reference] = successful_transaction(reference)

    resp = client.post("/checkouts/webhook", json={"event": "charge.success", "data": {"reference": reference}})

    assert resp.status_code == 200
    assert resp.json() == {
        "message": "Payment processed",
        "orderNumber": online["order"]["orderNumber"],
        "paymentStatus": "paid",
    }
    stored = client.get(f"/checkouts/{online['order']['id']}", headers=admin_headers).json()
    assert stored["paymentDetails"]["method"] == "card"
    assert len(sink.events("payment_verified")) == 1


def test_webhook_failed_payment_is_402(client, gateway, admin_headers, online):
    reference = online["order"]["paymentReference"]
    gateway.transactions[reference] = {"status": "failed", "reference": reference, "gateway_response": "Declined"}

    resp = client.post("/checkouts/webhook", json={"event": "charge.failed", "data": {"reference": reference}})

    assert resp.status_code == 402
    stored = client.get(f"/checkouts/{online['order']['id']}", headers=admin_headers).json()
    assert stored["paymentStatus"] == "failed"
    assert stored["paymentDetails"]["failure_reason"] == "Declined"


def test_webhook_requires_reference(client):
    resp = client.post("/checkouts/webhook", json={"event": "charge.success", "data": {}})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Payment reference is required"


def test_webhook_unknown_reference_is_404(client):
    resp = client.post("/checkouts/webhook", json={"data": {"reference": "ref_nobody"}})

    assert resp.status_code == 404


def test_webhook_rejects_reference_of_another_payment(client, gateway, admin_headers, online):
    gateway.transactions["ref_elsewhere"] = successful_transaction("ref_elsewhere", amount=100)

    resp = client.post("/checkouts/webhook", json={
        "event": "charge.success",
        "data": {"reference": "ref_elsewhere", "metadata": {"checkoutId": online["order"]["id"]}},
    })

    assert resp.status_code == 400
    stored = client.get(f"/checkouts/{online['order']['id']}", headers=admin_headers).json()
    assert stored["paymentStatus"] == "pending"


def test_webhook_signature_enforced(client, gateway, online):
    from app.main import app

    strict = get_settings().model_copy(update={"PAYSTACK_VERIFY_SIGNATURE": True})
    app.dependency_overrides[get_settings] = lambda: strict
    reference = online["order"]["paymentReference"]
    gateway.transactions[reference] = successful_transaction(reference)
    body = {"event": "charge.success", "data": {"reference": reference}}

    rejected = client.post("/checkouts/webhook", json=body, headers={"x-paystack-signature": "forged"})
    accepted = client.post("/checkouts/webhook", json=body, headers={"x-paystack-signature": "valid-signature"})

    assert rejected.status_code == 400
    assert accepted.status_code == 200


def test_manual_verification_route(client, gateway, admin_headers, online):
    reference = online["order"]["paymentReference"]
    gateway.transactions[reference] = successful_transaction(reference)

    resp = client.post(f"/checkouts/{online['order']['id']}/verify", headers=admin_headers)

    assert resp.status_code == 200
    assert resp.json()["paymentStatus"] == "paid"
    again = client.post(f"/checkouts/{online['order']['id']}/verify", headers=admin_headers)
    assert again.status_code == 409


def test_delivery_flow(client, admin_headers, order):
    checkout_id = order["id"]

    assigned = client.put(f"/checkouts/{checkout_id}/agent", headers=admin_headers,
                          json={"name": "Tunde", "phone": "+2348099999999", "agentId": "agent-7"})
    assert assigned.status_code == 200
    assert assigned.json()["deliveryStatus"] == "out_for_delivery"
    assert assigned.json()["deliveryAgent"] == {"name": "Tunde", "phone": "+2348099999999", "agentId": "agent-7"}

    pending = client.get("/checkouts/delivery-payments/pending", headers=admin_headers).json()
    assert [o["id"] for o in pending] == [checkout_id]

    missing_terminal = client.post(f"/checkouts/{checkout_id}/delivery-payment", headers=admin_headers,
                                   json={"actualMethod": "pos", "receivedBy": "Tunde"})
    assert missing_terminal.status_code == 400

    paid = client.post(f"/checkouts/{checkout_id}/delivery-payment", headers=admin_headers,
                       json={"actualMethod": "pos", "receivedBy": "Tunde", "posTerminal": "POS-0042"})
    assert paid.status_code == 200
    assert paid.json()["paymentStatus"] == "paid"
    assert paid.json()["deliveryStatus"] == "delivered"
    assert paid.json()["paymentDetails"]["method"] == "pos_on_delivery"

    confirmed = client.post(f"/checkouts/{checkout_id}/delivery-payment/confirm", headers=admin_headers,
                            json={"notes": "Settled"})
    capture = confirmed.json()["paymentDetails"]["delivery_payment_details"]
    assert capture["confirmed_by"] == "admin-1"
    assert capture["notes"] == "Settled"

    assert client.get("/checkouts/delivery-payments/pending", headers=admin_headers).json() == []
    stats = client.get("/checkouts/stats/payment-methods", headers=admin_headers).json()
    assert stats["delivery"]["byMethod"]["pos_on_delivery"] == {"count": 1, "totalAmount": 5000.0}

    terminal = client.put(f"/checkouts/{checkout_id}/delivery-status", headers=admin_headers,
                          json={"deliveryStatus": "shipped"})
    assert terminal.status_code == 409


def test_delivery_status_validation(client, admin_headers, order):
    resp = client.put(f"/checkouts/{order['id']}/delivery-status", headers=admin_headers,
                      json={"deliveryStatus": "teleported"})

    assert resp.status_code == 400


def test_payment_status_override(client, admin_headers, order, online):
    resp = client.put(f"/checkouts/{order['id']}/payment-status", headers=admin_headers,
                      json={"paymentStatus": "paid"})
    assert resp.status_code == 200
    assert resp.json()["paymentStatus"] == "paid"

    rejected = client.put(f"/checkouts/{online['order']['id']}/payment-status", headers=admin_headers,
                          json={"paymentStatus": "paid"})
    assert rejected.status_code == 409


def test_address_correction(client, admin_headers, order):
    resp = client.put(f"/checkouts/{order['id']}/address", headers=admin_headers,
                      json=inline_details(address="7 Allen Avenue", city="Ikeja"))

    assert resp.status_code == 200
    assert resp.json()["userDetails"]["city"] == "Ikeja"


def test_location_statistics_route(client, admin_headers, user_headers, order):
    place(client, user_headers, userDetails=inline_details(city="Abuja"))

    stats = client.get("/checkouts/stats/locations", headers=admin_headers).json()

    assert {(s["city"], s["totalOrders"]) for s in stats} == {("Lagos", 1), ("Abuja", 1)}
    assert stats[0]["totalAmount"] == 5000.0


def test_customer_cancels(client, user_headers, other_user_headers, admin_headers, sink, order):
    assert client.delete(f"/checkouts/{order['id']}", headers=other_user_headers).status_code == 404

    resp = client.delete(f"/checkouts/{order['id']}", headers=user_headers)

    assert resp.status_code == 200
    assert resp.json()["orderNumber"] == order["orderNumber"]
    assert client.get(f"/checkouts/{order['id']}", headers=admin_headers).status_code == 404
    assert sink.events("checkout_cancelled")


def test_admin_cannot_cancel_dispatched_order(client, admin_headers, order):
    client.put(f"/checkouts/{order['id']}/delivery-status", headers=admin_headers,
               json={"deliveryStatus": "shipped"})

    resp = client.delete(f"/checkouts/{order['id']}", headers=admin_headers)

    assert resp.status_code == 409
