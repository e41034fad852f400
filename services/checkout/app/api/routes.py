import json
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.api.deps import (
    CurrentUser,
    get_checkout_service,
    get_current_user,
    get_delivery_manager,
    get_gateway,
    get_payment_verifier,
    optional_user,
    require_admin,
)
from app.application.delivery import DeliveryLifecycleManager
from app.application.payment_verifier import PaymentVerifier
from app.application.schemas import (
    AgentAssignment,
    CheckoutCreate,
    CheckoutCreated,
    CheckoutRead,
    CheckoutSearch,
    CheckoutStatusRead,
    DeliveryAgent,
    DeliveryPaymentConfirmation,
    DeliveryPaymentIn,
    DeliveryStatusUpdate,
    LocationStat,
    NotificationRead,
    PaymentStatusUpdate,
    WebhookAck,
)
from app.application.service import CheckoutService
from app.core_settings import Settings, get_settings
from app.domain.errors import ValidationError
from app.infrastructure.db import get_db
from app.infrastructure.paystack import PaystackClient
from app.infrastructure.repository import NotificationRepository
from shared.core import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/checkouts", tags=["checkouts"])
notifications_router = APIRouter(prefix="/notifications", tags=["notifications"])

# ---- customer -----------------------------------------------------------

@router.post("/", response_model=CheckoutCreated, status_code=201)
def create_checkout(
    payload: CheckoutCreate,
    user: Optional[CurrentUser] = Depends(optional_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    result = service.create_checkout(user.id if user else None, payload)
    return CheckoutCreated(order=CheckoutRead.model_validate(result.checkout), payment_url=result.payment_url)

@router.get("/me", response_model=list[CheckoutRead])
def list_my_checkouts(
    user: CurrentUser = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.list_user_checkouts(user.id)

@router.get("/me/delivered", response_model=list[CheckoutRead])
def list_my_delivered_orders(
    user: CurrentUser = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.list_delivered_orders(user.id)

@router.delete("/me/{checkout_id}", status_code=204)
def delete_my_checkout(
    checkout_id: int,
    user: CurrentUser = Depends(get_current_user),
    service: CheckoutService = Depends(get_checkout_service),
):
    service.delete_owned_order(checkout_id, user.id)
    return None

@router.get("/status/{checkout_id}", response_model=CheckoutStatusRead)
def get_checkout_status(checkout_id: int, service: CheckoutService = Depends(get_checkout_service)):
    """Public order tracking."""
    return service.get_checkout(checkout_id)

# ---- gateway ------------------------------------------------------------

@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    gateway: PaystackClient = Depends(get_gateway),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
):
    body = await request.body()
    if settings.PAYSTACK_VERIFY_SIGNATURE and not gateway.verify_signature(
        body, request.headers.get("x-paystack-signature")
    ):
        raise ValidationError("Invalid webhook signature")

    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Webhook body must be JSON") from None
    if not isinstance(event, dict):
        raise ValidationError("Webhook body must be a JSON object")

    data = event.get("data") if isinstance(event.get("data"), dict) else event
    reference = data.get("reference")
    if not reference:
        raise ValidationError("Payment reference is required")
    logger.info(f"Payment webhook {event.get('event', 'unknown')} for {reference}")

    checkout = await run_in_threadpool(
        verifier.handle_webhook, str(reference), {"event": event.get("event"), "metadata": data.get("metadata")}
    )
    return WebhookAck(
        message="Payment processed",
        order_number=checkout.order_number,
        payment_status=checkout.payment_status,
    )

# ---- admin --------------------------------------------------------------

@router.get("/", response_model=list[CheckoutRead])
def list_checkouts(
    skip: int = 0,
    limit: int = 100,
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.list_checkouts(skip=skip, limit=min(limit, 500))

@router.get("/search", response_model=list[CheckoutRead])
def search_checkouts(
    filters: CheckoutSearch = Depends(),
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.search_checkouts(filters)

@router.get("/stats/locations", response_model=list[LocationStat])
def location_statistics(
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.get_location_statistics()

@router.get("/stats/payment-methods")
def payment_method_statistics(
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.get_payment_method_statistics()

@router.get("/delivery-payments/pending", response_model=list[CheckoutRead])
def pending_delivery_payments(
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.get_pending_delivery_payments()

@router.get("/{checkout_id}", response_model=CheckoutRead)
def get_checkout(
    checkout_id: int,
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.get_checkout(checkout_id)

@router.post("/{checkout_id}/verify", response_model=CheckoutRead)
def verify_payment(
    checkout_id: int,
    _: CurrentUser = Depends(require_admin),
    verifier: PaymentVerifier = Depends(get_payment_verifier),
):
    return verifier.verify_manually(checkout_id)

@router.put("/{checkout_id}/payment-status", response_model=CheckoutRead)
def update_payment_status(
    checkout_id: int,
    payload: PaymentStatusUpdate,
    _: CurrentUser = Depends(require_admin),
    manager: DeliveryLifecycleManager = Depends(get_delivery_manager),
):
    return manager.update_payment_status(checkout_id, payload.payment_status)

@router.put("/{checkout_id}/delivery-status", response_model=CheckoutRead)
def update_delivery_status(
    checkout_id: int,
    payload: DeliveryStatusUpdate,
    _: CurrentUser = Depends(require_admin),
    manager: DeliveryLifecycleManager = Depends(get_delivery_manager),
):
    return manager.update_delivery_status(checkout_id, payload.delivery_status, payload.note)

@router.put("/{checkout_id}/agent", response_model=CheckoutRead)
def assign_delivery_agent(
    checkout_id: int,
    payload: AgentAssignment,
    _: CurrentUser = Depends(require_admin),
    manager: DeliveryLifecycleManager = Depends(get_delivery_manager),
):
    agent = DeliveryAgent(name=payload.name, phone=payload.phone, agent_id=payload.agent_id)
    return manager.assign_delivery_agent(checkout_id, agent, payload.delivery_status)

@router.post("/{checkout_id}/delivery-payment", response_model=CheckoutRead)
def record_delivery_payment(
    checkout_id: int,
    payload: DeliveryPaymentIn,
    _: CurrentUser = Depends(require_admin),
    manager: DeliveryLifecycleManager = Depends(get_delivery_manager),
):
    return manager.record_delivery_payment(checkout_id, payload)

@router.post("/{checkout_id}/delivery-payment/confirm", response_model=CheckoutRead)
def confirm_delivery_payment(
    checkout_id: int,
    payload: DeliveryPaymentConfirmation,
    admin: CurrentUser = Depends(require_admin),
    manager: DeliveryLifecycleManager = Depends(get_delivery_manager),
):
    return manager.confirm_delivery_payment(checkout_id, admin.id, payload.notes)

@router.put("/{checkout_id}/address", response_model=CheckoutRead)
def update_checkout_address(
    checkout_id: int,
    payload: dict,
    _: CurrentUser = Depends(require_admin),
    service: CheckoutService = Depends(get_checkout_service),
):
    return service.update_checkout_address(checkout_id, payload)

@router.delete("/{checkout_id}", response_model=CheckoutRead)
def cancel_checkout(
    checkout_id: int,
    user: CurrentUser = Depends(get_current_user),
    manager: DeliveryLifecycleManager = Depends(get_delivery_manager),
):
    """Cancel before the deadline; customers may only cancel their own orders."""
    return manager.cancel_checkout(checkout_id, requester_id=None if user.is_admin else user.id)

# ---- admin notifications ------------------------------------------------

@notifications_router.get("/", response_model=list[NotificationRead])
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    _: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return NotificationRepository(db).list(unread_only=unread_only, limit=min(limit, 200))

@notifications_router.put("/{notification_id}/read", response_model=NotificationRead)
def mark_notification_read(
    notification_id: int,
    _: CurrentUser = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return NotificationRepository(db).mark_read(notification_id)
