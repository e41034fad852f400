import os

# Module-level settings and engine are created on first import of the app
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PAYSTACK_SECRET_KEY"] = "sk_test_webhooksecret"
os.environ["RECONCILE_INTERVAL_SECONDS"] = "0"
os.environ["VERIFY_INITIAL_DELAY_SECONDS"] = "0"
os.environ.pop("REDIS_URL", None)
os.environ.pop("SENDGRID_API_KEY", None)

from copy import deepcopy
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.application.delivery import DeliveryLifecycleManager
from app.application.notifier import CheckoutNotifier
from app.application.payment_verifier import PaymentVerifier
from app.application.schemas import CheckoutCreate
from app.application.service import CheckoutService
from app.auth_local import create_access_token
from app.core_settings import get_settings
from app.domain.models import Base
from app.infrastructure.notifications import NotificationSink

PAYMENT_URL = "https://checkout.paystack.test/pay/abc123"


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class FakeGateway:
    """Scripted payment gateway; ``transactions[ref]`` may be a dict, an exception or a list of them."""

    def __init__(self):
        self.initialized = []
        self.verify_calls = []
        self.init_response = {"authorization_url": PAYMENT_URL, "access_code": "abc123"}
        self.init_error = None
        self.transactions = {}
        self.before_verify = None

    def initialize(self, email, amount, reference, metadata=None):
        self.initialized.append({"email": email, "amount": amount, "reference": reference, "metadata": metadata})
        if self.init_error is not None:
            raise self.init_error
        return {**self.init_response, "reference": reference}

    def verify(self, reference):
        self.verify_calls.append(reference)
        if self.before_verify is not None:
            hook, self.before_verify = self.before_verify, None
            hook(reference)
        outcome = self.transactions.get(reference, {"status": "abandoned", "reference": reference})
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def verify_signature(self, body, signature):
        return signature == "valid-signature"


def successful_transaction(reference, channel="card", amount=500000, **extra):
    transaction = {
        "status": "success",
        "reference": reference,
        "amount": amount,
        "currency": "NGN",
        "channel": channel,
        "paid_at": "2026-10-19T09:30:00.000Z",
        "gateway_response": "Successful",
        "fees": 7500,
        "customer": {"customer_code": "CUS_test1"},
        "authorization": {
            "authorization_code": "AUTH_test1",
            "card_type": "visa",
            "last4": "4081",
            "exp_month": "12",
            "exp_year": "2030",
            "bank": "Test Bank",
            "brand": "visa",
            "bin": "408408",
            "reusable": True,
            "signature": "SIG_test1",
        },
    }
    transaction.update(extra)
    return transaction


class FakeCatalog:
    def __init__(self):
        self.products = {
            "prod-shirt": {"id": "prod-shirt", "name": "Linen Shirt", "price": 1500, "category": "tops"},
            "prod-shoe": {"id": "prod-shoe", "name": "Loafer", "price": 2500, "finalPrice": 2000, "brand": "Oxford"},
        }

    def find_by_id(self, product_id):
        product = self.products.get(product_id)
        return deepcopy(product) if product else None


class FakeCart:
    def __init__(self):
        self.items = {}
        self.cleared = []
        self.clear_error = None

    def get_items(self, user_id):
        return list(self.items.get(user_id, []))

    def clear(self, user_id):
        if self.clear_error is not None:
            raise self.clear_error
        self.cleared.append(user_id)


class FakeAddressBook:
    def __init__(self):
        self.saved = {}
        self.created = []

    def get_by_id(self, address_id, user_id):
        address = self.saved.get(address_id)
        if not address or address.get("userId") != user_id:
            return None
        return deepcopy(address)

    def create(self, user_id, details):
        self.created.append((user_id, details))
        location = dict(details.get("location") or {})
        location.setdefault("placeId", "place-123")
        location.setdefault("formattedAddress", f"{details.get('address')}, {details.get('city')}")
        return {**details, "id": f"addr-{len(self.created)}", "userId": user_id, "location": location}


class RecordingSink(NotificationSink):
    def __init__(self):
        self.admin = []
        self.emails = []
        self.fail = False

    def notify_admin(self, event_type, message, data):
        if self.fail:
            raise RuntimeError("notification channel down")
        self.admin.append({"type": event_type, "message": message, "data": data})

    def send_email(self, to, subject, body):
        if self.fail:
            raise RuntimeError("smtp down")
        self.emails.append({"to": to, "subject": subject, "body": body})

    def events(self, event_type):
        return [n for n in self.admin if n["type"] == event_type]


def inline_details(**overrides):
    details = {
        "firstName": "Ada",
        "lastName": "Obi",
        "address": "12 Marina Road",
        "phoneNumber": "+2348012345678",
        "email": "ada@example.com",
        "city": "Lagos",
        "state": "Lagos",
        "country": {"name": "Nigeria", "code": "NG"},
        "location": {"lat": 6.4541, "lng": 3.3947},
    }
    details.update(overrides)
    return details


def checkout_request(payment_type="payment_on_delivery", products=None, **detail_overrides):
    if products is None:
        products = [
            {"product": "prod-shirt", "quantity": 2, "size": "M", "color": "white"},
            {"product": "prod-shoe", "quantity": 1, "size": "42", "color": "brown"},
        ]
    return CheckoutCreate(
        products=products,
        user_details=inline_details(**detail_overrides),
        payment_type=payment_type,
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'checkout.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 10, 19, 9, 0, 0))


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def cart():
    return FakeCart()


@pytest.fixture
def addresses():
    return FakeAddressBook()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def notifier(sink):
    return CheckoutNotifier(sink)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def checkout_service(db, gateway, catalog, cart, addresses, notifier, settings, clock):
    return CheckoutService(db, gateway, catalog, cart, addresses, notifier, settings, clock=clock)


@pytest.fixture
def verifier(db, gateway, notifier, settings, sleeps, clock):
    # Production backoff so the recorded sleeps are meaningful
    backoff = settings.model_copy(update={"VERIFY_INITIAL_DELAY_SECONDS": 2.0})
    return PaymentVerifier(db, gateway, notifier, backoff, sleep=sleeps.append, clock=clock)


@pytest.fixture
def delivery(db, notifier, clock):
    return DeliveryLifecycleManager(db, notifier, clock=clock)


@pytest.fixture
def place_order(checkout_service):
    def _place(payment_type="payment_on_delivery", user_id="user-1", **kwargs):
        return checkout_service.create_checkout(user_id, checkout_request(payment_type, **kwargs))
    return _place


@pytest.fixture
def client(session_factory, gateway, catalog, cart, addresses, sink):
    from app.main import app
    from app.api import deps
    from app.infrastructure.db import get_db

    def override_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[deps.get_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_catalog] = lambda: catalog
    app.dependency_overrides[deps.get_cart] = lambda: cart
    app.dependency_overrides[deps.get_addresses] = lambda: addresses
    app.dependency_overrides[deps.get_notification_sink] = lambda: sink
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {create_access_token('user-1')}"}


@pytest.fixture
def other_user_headers():
    return {"Authorization": f"Bearer {create_access_token('user-2')}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_access_token('admin-1', role='admin')}"}
