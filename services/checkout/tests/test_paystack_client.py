import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest

from app.domain.errors import UpstreamServiceError
from app.infrastructure.clients import AddressClient, CartClient, ProductCatalogClient
from app.infrastructure.paystack import PaystackClient, to_minor_units

SECRET = "sk_test_webhooksecret"


def gateway_with(handler, **kwargs):
    return PaystackClient(SECRET, base_url="https://api.paystack.test", transport=httpx.MockTransport(handler), **kwargs)


def test_to_minor_units():
    assert to_minor_units(Decimal("5000")) == 500000
    assert to_minor_units(Decimal("19.995")) == 2000
    assert to_minor_units(Decimal("0.01")) == 1


def test_initialize_posts_minor_units():
    captured = {}

    def handler(request):
        captured["path"] = request.url.path
        captured["auth"] = request.headers["Authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "status": True,
            "data": {"authorization_url": "https://checkout.paystack.test/xyz", "access_code": "xyz",
                     "reference": "ref_1"},
        })

    gateway = gateway_with(handler, callback_url="https://shop.test/paid", currency="NGN")
    data = gateway.initialize("ada@example.com", Decimal("5000.00"), "ref_1", {"orderNumber": "ORD-1"})

    assert data["authorization_url"] == "https://checkout.paystack.test/xyz"
    assert captured["path"] == "/transaction/initialize"
    assert captured["auth"] == f"Bearer {SECRET}"
    assert captured["body"] == {
        "email": "ada@example.com",
        "amount": 500000,
        "reference": "ref_1",
        "metadata": {"orderNumber": "ORD-1"},
        "callback_url": "https://shop.test/paid",
        "currency": "NGN",
    }


def test_verify_returns_transaction():
    def handler(request):
        assert request.url.path == "/transaction/verify/ref_1"
        return httpx.Response(200, json={"status": True, "data": {"status": "success", "reference": "ref_1"}})

    assert gateway_with(handler).verify("ref_1")["status"] == "success"


@pytest.mark.parametrize("response", [
    httpx.Response(400, json={"status": False, "message": "Invalid key"}),
    httpx.Response(200, json={"status": False, "message": "Transaction reference not found"}),
    httpx.Response(502, text="Bad gateway"),
])
def test_gateway_errors_are_upstream_errors(response):
    with pytest.raises(UpstreamServiceError):
        gateway_with(lambda request: response).verify("ref_1")


def test_transport_errors_are_upstream_errors():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(UpstreamServiceError, match="unreachable"):
        gateway_with(handler).verify("ref_1")


def test_webhook_signature():
    gateway = PaystackClient(SECRET)
    body = b'{"event":"charge.success","data":{"reference":"ref_1"}}'
    signature = hmac.new(SECRET.encode(), body, hashlib.sha512).hexdigest()

    assert gateway.verify_signature(body, signature)
    assert not gateway.verify_signature(body, "0" * 128)
    assert not gateway.verify_signature(body, None)
    assert not PaystackClient("").verify_signature(body, signature)


def test_catalog_client():
    def handler(request):
        if request.url.path == "/products/prod-shirt":
            return httpx.Response(200, json={"id": "prod-shirt", "price": 1500})
        return httpx.Response(404, json={"detail": "Not found"})

    catalog = ProductCatalogClient("http://products.test", transport=httpx.MockTransport(handler))

    assert catalog.find_by_id("prod-shirt")["price"] == 1500
    assert catalog.find_by_id("ghost") is None


def test_catalog_outage():
    catalog = ProductCatalogClient(
        "http://products.test", transport=httpx.MockTransport(lambda request: httpx.Response(503))
    )

    with pytest.raises(UpstreamServiceError):
        catalog.find_by_id("prod-shirt")


def test_cart_client():
    calls = []

    def handler(request):
        calls.append((request.method, request.url.path))
        if request.method == "GET":
            return httpx.Response(200, json={"items": [{"product": "prod-shirt", "quantity": 1}]})
        return httpx.Response(204)

    cart = CartClient("http://cart.test", transport=httpx.MockTransport(handler))

    assert cart.get_items("user-1") == [{"product": "prod-shirt", "quantity": 1}]
    cart.clear("user-1")
    assert calls == [("GET", "/carts/user-1"), ("DELETE", "/carts/user-1")]


def test_address_client():
    def handler(request):
        if request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json={**body, "id": "addr-1"})
        if request.url.params.get("user_id") == "user-1":
            return httpx.Response(200, json={"id": "addr-1", "userId": "user-1"})
        return httpx.Response(403)

    addresses = AddressClient("http://addresses.test", transport=httpx.MockTransport(handler))

    assert addresses.get_by_id("addr-1", "user-1")["id"] == "addr-1"
    assert addresses.get_by_id("addr-1", "user-2") is None
    assert addresses.create("user-1", {"city": "Lagos"}) == {"city": "Lagos", "userId": "user-1", "id": "addr-1"}
