"""Request-scoped dependencies: auth, collaborators and application services."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from app.application.delivery import DeliveryLifecycleManager
from app.application.notifier import CheckoutNotifier
from app.application.payment_verifier import PaymentVerifier
from app.application.service import CheckoutService
from app.auth_local import decode_access_token
from app.core_settings import Settings, get_settings
from app.infrastructure.clients import AddressClient, CartClient, ProductCatalogClient
from app.infrastructure.db import get_db
from app.infrastructure.notifications import (
    NotificationSink,
    PlatformNotificationSink,
    build_broadcaster,
    build_mailer,
)
from app.infrastructure.paystack import PaystackClient
from app.infrastructure.repository import NotificationRepository
from shared.core import set_request_context

BEARER_PREFIX = "Bearer "
ADMIN_ROLE = "admin"


@dataclass
class CurrentUser:
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_current_user(request: Request) -> CurrentUser:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith(BEARER_PREFIX):
        raise HTTPException(status_code=401, detail="Missing token")
    token_data = decode_access_token(auth_header[len(BEARER_PREFIX):])
    if not token_data or not token_data.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = CurrentUser(id=str(token_data["sub"]), role=token_data.get("role", "user"))
    set_request_context(user_id=user.id)
    return user


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_gateway(settings: Settings = Depends(get_settings)) -> PaystackClient:
    return PaystackClient.from_settings(settings)


def get_catalog(settings: Settings = Depends(get_settings)) -> ProductCatalogClient:
    return ProductCatalogClient.from_settings(settings)


def get_cart(settings: Settings = Depends(get_settings)) -> CartClient:
    return CartClient.from_settings(settings)


def get_addresses(settings: Settings = Depends(get_settings)) -> AddressClient:
    return AddressClient.from_settings(settings)


def get_notification_sink(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> NotificationSink:
    return PlatformNotificationSink(
        store=NotificationRepository(db),
        broadcaster=build_broadcaster(settings),
        mailer=build_mailer(settings),
    )


def get_notifier(
    sink: NotificationSink = Depends(get_notification_sink),
    settings: Settings = Depends(get_settings),
) -> CheckoutNotifier:
    return CheckoutNotifier(sink, currency=settings.CURRENCY)


def get_checkout_service(
    db: Session = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway),
    catalog: ProductCatalogClient = Depends(get_catalog),
    cart: CartClient = Depends(get_cart),
    addresses: AddressClient = Depends(get_addresses),
    notifier: CheckoutNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> CheckoutService:
    return CheckoutService(db, gateway, catalog, cart, addresses, notifier, settings)


def get_payment_verifier(
    db: Session = Depends(get_db),
    gateway: PaystackClient = Depends(get_gateway),
    notifier: CheckoutNotifier = Depends(get_notifier),
    settings: Settings = Depends(get_settings),
) -> PaymentVerifier:
    return PaymentVerifier(db, gateway, notifier, settings)


def get_delivery_manager(
    db: Session = Depends(get_db),
    notifier: CheckoutNotifier = Depends(get_notifier),
) -> DeliveryLifecycleManager:
    return DeliveryLifecycleManager(db, notifier)


def optional_user(request: Request) -> Optional[CurrentUser]:
    """Caller identity when a bearer token is present, else ``None`` (guest)."""
    if not request.headers.get("Authorization"):
        return None
    return get_current_user(request)
