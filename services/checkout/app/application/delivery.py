"""
Delivery lifecycle: status changes, agent assignment, cash/POS/transfer
capture at the door and customer cancellation.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.application.notifier import CheckoutNotifier, admin_payload
from app.application.schemas import DeliveryAgent, DeliveryPaymentIn
from app.domain.enums import (
    DELIVERY_PAYMENT_STATUSES,
    TERMINAL_DELIVERY_STATUSES,
    DeliveryPaymentMethod,
    DeliveryStatus,
    NotificationEvent,
    PaymentStatus,
    PaymentType,
    parse_enum,
)
from app.domain.errors import InvalidStateError, NotFoundError, ValidationError
from app.domain.models import Checkout, utcnow
from app.domain.payment_details import DeliveryCapture, DeliveryPaymentDetails
from app.infrastructure.repository import CheckoutRepository
from shared.core import get_logger

logger = get_logger(__name__)

_TERMINAL = {s.value for s in TERMINAL_DELIVERY_STATUSES}
_PAYABLE_AT_DOOR = {s.value for s in DELIVERY_PAYMENT_STATUSES}


def validate_delivery_payment(data: DeliveryPaymentIn) -> DeliveryPaymentMethod:
    try:
        method = DeliveryPaymentMethod(data.actual_method)
    except ValueError:
        raise ValidationError("Invalid delivery payment method") from None
    if not data.received_by or not data.received_by.strip():
        raise ValidationError("Delivery agent name is required")
    if method == DeliveryPaymentMethod.POS and not data.pos_terminal:
        raise ValidationError("POS terminal ID is required for POS payments")
    if method == DeliveryPaymentMethod.TRANSFER and not data.transfer_reference:
        raise ValidationError("Transfer reference is required for bank transfer payments")
    return method


class DeliveryLifecycleManager:
    def __init__(
        self,
        db: Session,
        notifier: Optional[CheckoutNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = CheckoutRepository(db)
        self.notifier = notifier or CheckoutNotifier()
        self.clock = clock

    def _guard_transition(self, checkout: Checkout, target: DeliveryStatus, now: datetime) -> None:
        if checkout.delivery_status in _TERMINAL:
            raise InvalidStateError(f"Order is already {checkout.delivery_status}")
        if target == DeliveryStatus.CANCELLED and not checkout.can_be_cancelled(now):
            raise InvalidStateError("Order can no longer be cancelled")

    def update_delivery_status(self, checkout_id: int, new_status: str, note: Optional[str] = None) -> Checkout:
        target = parse_enum(DeliveryStatus, new_status, "delivery status")
        now = self.clock()
        changed = []

        def mutate(checkout: Checkout):
            if checkout.delivery_status == target.value:
                return False
            self._guard_transition(checkout, target, now)
            checkout.append_status(target, note, now)
            if target == DeliveryStatus.DELIVERED and checkout.actual_delivery_date is None:
                checkout.actual_delivery_date = now
            changed.append(True)

        updated = self.repo.apply(checkout_id, mutate)
        if changed:
            logger.info(f"Order {updated.order_number} delivery status -> {target.value}")
            self.notifier.delivery_status_changed(updated)
        return updated

    def update_payment_status(self, checkout_id: int, new_status: str) -> Checkout:
        """Admin override for pay-on-delivery orders only."""
        target = parse_enum(PaymentStatus, new_status, "payment status")
        if target == PaymentStatus.PENDING:
            raise ValidationError("Payment status can only be set to paid or failed")

        def mutate(checkout: Checkout):
            if checkout.payment_type != PaymentType.PAYMENT_ON_DELIVERY.value:
                raise InvalidStateError("Only payment on delivery orders can be updated manually")
            if checkout.payment_status == PaymentStatus.PAID.value:
                raise InvalidStateError("Order is already paid")
            checkout.payment_status = target.value

        updated = self.repo.apply(checkout_id, mutate)
        logger.info(f"Order {updated.order_number} payment status -> {target.value}")
        self.notifier.payment_status_changed(updated)
        return updated

    def assign_delivery_agent(
        self,
        checkout_id: int,
        agent: DeliveryAgent,
        new_status: str = DeliveryStatus.OUT_FOR_DELIVERY.value,
    ) -> Checkout:
        if not agent.name.strip() or not agent.phone.strip():
            raise ValidationError("Agent name and phone are required")
        target = parse_enum(DeliveryStatus, new_status, "delivery status")
        now = self.clock()
        agent_record = agent.model_dump(by_alias=True, exclude_none=True)

        def mutate(checkout: Checkout):
            self._guard_transition(checkout, target, now)
            checkout.delivery_agent = agent_record
            checkout.append_status(target, f"Assigned to {agent.name} ({agent.phone})", now)

        updated = self.repo.apply(checkout_id, mutate)
        logger.info(f"Agent {agent.name} assigned to order {updated.order_number}")
        self.notifier.agent_assigned(updated)
        return updated

    def record_delivery_payment(self, checkout_id: int, data: DeliveryPaymentIn) -> Checkout:
        method = validate_delivery_payment(data)
        now = self.clock()
        details = DeliveryPaymentDetails(
            method=method.recorded_method,
            channel=method.value,
            delivery_payment_details=DeliveryCapture(
                actual_method=method.value,
                received_by=data.received_by.strip(),
                received_at=now,
                notes=data.notes or "",
                pos_terminal=data.pos_terminal if method == DeliveryPaymentMethod.POS else None,
                transfer_reference=data.transfer_reference if method == DeliveryPaymentMethod.TRANSFER else None,
            ),
        ).to_record()
        agent_record = data.agent.model_dump(by_alias=True, exclude_none=True) if data.agent else None

        def mutate(checkout: Checkout):
            if checkout.payment_type != PaymentType.PAYMENT_ON_DELIVERY.value:
                raise InvalidStateError("This order is not a payment on delivery order")
            if checkout.payment_status == PaymentStatus.PAID.value:
                raise InvalidStateError("Payment has already been recorded for this order")
            if checkout.delivery_status not in _PAYABLE_AT_DOOR:
                raise InvalidStateError("Order must be out for delivery or delivered to record payment")

            checkout.payment_status = PaymentStatus.PAID.value
            checkout.payment_details = details
            if agent_record:
                checkout.delivery_agent = agent_record
            if checkout.delivery_status != DeliveryStatus.DELIVERED.value:
                checkout.append_status(
                    DeliveryStatus.DELIVERED, f"Payment received by {data.received_by.strip()}", now
                )
            if checkout.actual_delivery_date is None:
                checkout.actual_delivery_date = now

        updated = self.repo.apply(checkout_id, mutate)
        logger.info(
            f"Delivery payment recorded for {updated.order_number}",
            extra={'extra_fields': {'method': method.recorded_method}}
        )
        self.notifier.delivery_payment_received(updated, method)
        return updated

    def confirm_delivery_payment(self, checkout_id: int, admin_user_id: str, notes: Optional[str] = None) -> Checkout:
        now = self.clock()

        def mutate(checkout: Checkout):
            details: Dict[str, Any] = dict(checkout.payment_details or {})
            capture = details.get("delivery_payment_details")
            if not capture:
                raise NotFoundError("No delivery payment details found")
            capture = {**capture, "confirmed_by": str(admin_user_id), "confirmed_at": now.isoformat()}
            if notes is not None:
                capture["notes"] = notes
            details["delivery_payment_details"] = capture
            checkout.payment_details = details

        updated = self.repo.apply(checkout_id, mutate)
        logger.info(f"Delivery payment for {updated.order_number} confirmed by {admin_user_id}")
        return updated

    def cancel_checkout(self, checkout_id: int, requester_id: Optional[str] = None) -> Checkout:
        """
        Cancel and hard-delete an order.

        Only allowed before the cancellation deadline and before payment.
        ``requester_id`` restricts the operation to the order's owner; admins
        pass ``None``.
        """
        now = self.clock()
        payload: Dict[str, Any] = {}

        def guard(checkout: Checkout) -> None:
            if requester_id is not None and checkout.user != str(requester_id):
                raise NotFoundError("Checkout not found")
            if now > checkout.cancellation_deadline:
                raise InvalidStateError("Cancellation deadline has passed")
            if checkout.payment_status == PaymentStatus.PAID.value:
                raise InvalidStateError("Cannot cancel a paid checkout")
            if not checkout.can_be_cancelled(now):
                raise InvalidStateError(f"Order cannot be cancelled once {checkout.delivery_status}")
            payload.update(admin_payload(checkout))

        removed = self.repo.remove(checkout_id, guard)
        logger.info(f"Order {payload.get('orderNumber')} cancelled")
        self.notifier.checkout_removed(payload, NotificationEvent.CHECKOUT_CANCELLED)
        return removed
