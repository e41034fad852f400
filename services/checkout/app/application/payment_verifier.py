"""
Online payment confirmation.

Three entry points reach the same two outcomes: the gateway webhook, an
admin-triggered manual verification and the reconciliation sweep. Success
moves the order to ``paid`` exactly once; failure records ``failed`` with
the reason and keeps the payment reference so the order can be retried.
"""

import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from app.application.notifier import CheckoutNotifier
from app.core_settings import Settings, get_settings
from app.domain.enums import DeliveryStatus, NotificationEvent, PaymentStatus
from app.domain.errors import InvalidStateError, NotFoundError, PaymentVerificationError, ValidationError
from app.domain.models import Checkout, utcnow
from app.domain.payment_details import FailedPaymentDetails, extract_payment_details
from app.infrastructure.paystack import PaystackClient
from app.infrastructure.repository import CheckoutRepository
from shared.core import RetryExhausted, get_logger, retry_with_backoff, set_request_context

logger = get_logger(__name__)

GATEWAY_SUCCESS = "success"

# Statuses an online order may already have reached when its payment lands
_PAST_PROCESSING = {
    DeliveryStatus.UNDER_PROCESS.value,
    DeliveryStatus.OUT_FOR_DELIVERY.value,
    DeliveryStatus.SHIPPED.value,
    DeliveryStatus.DELIVERED.value,
}


def parse_gateway_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 gateway timestamp as naive UTC; ``None`` if absent or unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _is_success(transaction: Optional[Dict[str, Any]]) -> bool:
    return bool(transaction) and transaction.get("status") == GATEWAY_SUCCESS


def amount_paid(transaction: Dict[str, Any]) -> Optional[Decimal]:
    """Major-unit amount the gateway says was charged; ``None`` if not reported."""
    raw = transaction.get("amount")
    if raw is None or raw == "":
        return None
    try:
        return Decimal(str(raw)) / 100
    except InvalidOperation:
        return None


def rejection_reason(checkout: Checkout, transaction: Optional[Dict[str, Any]]) -> Optional[str]:
    """Why ``transaction`` cannot settle ``checkout``, or ``None`` when it can."""
    if not _is_success(transaction):
        transaction = transaction or {}
        return transaction.get("gateway_response") or f"Gateway status: {transaction.get('status') or 'unknown'}"
    paid = amount_paid(transaction)
    if paid is None:
        return "Gateway did not report the amount paid"
    if paid < checkout.total_amount:
        return f"Amount paid {paid:.2f} is less than the order total {checkout.total_amount:.2f}"
    return None


class PaymentVerifier:
    def __init__(
        self,
        db: Session,
        gateway: PaystackClient,
        notifier: Optional[CheckoutNotifier] = None,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repo = CheckoutRepository(db)
        self.gateway = gateway
        self.notifier = notifier or CheckoutNotifier()
        self.settings = settings or get_settings()
        self.sleep = sleep
        self.clock = clock

    def handle_webhook(self, reference: str, payload: Optional[Dict[str, Any]] = None) -> Checkout:
        """
        Apply a gateway callback for ``reference``.

        The gateway is always asked for the authoritative status; the
        callback body is only used to locate the order.

        Raises:
            NotFoundError: no order matches the reference or metadata
            PaymentVerificationError: the gateway reports a non-success status
        """
        payload = payload or {}
        checkout = self._locate(reference, payload.get("metadata"))
        set_request_context(checkout_id=checkout.id)

        if checkout.payment_status == PaymentStatus.PAID.value:
            logger.info(f"Webhook for already paid order {checkout.order_number} ignored")
            return checkout

        failure_recorded = False
        try:
            transaction = self.gateway.verify(reference)
            reason = rejection_reason(checkout, transaction)
            if reason:
                self._record_failure(checkout.id, reason, (transaction or {}).get("channel"))
                failure_recorded = True
                raise PaymentVerificationError(f"Payment verification failed: {reason}")
            return self._record_success(checkout.id, transaction, reference, NotificationEvent.PAYMENT_VERIFIED)
        except Exception as e:
            if not failure_recorded:
                self._record_failure_quietly(checkout.id, str(e))
            raise

    def verify_with_retry(
        self,
        reference: str,
        max_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Poll the gateway until it reports success.

        Delays double after each unsuccessful attempt (2 s, 4 s with the
        defaults); nothing is slept after the final attempt.
        """
        attempts = self.settings.VERIFY_MAX_RETRIES if max_retries is None else max_retries
        delay = self.settings.VERIFY_INITIAL_DELAY_SECONDS if initial_delay is None else initial_delay
        try:
            return retry_with_backoff(
                lambda: self.gateway.verify(reference),
                attempts=attempts,
                base_delay=delay,
                multiplier=2.0,
                accept=_is_success,
                sleep=self.sleep,
                description=f"payment verification {reference}",
            )
        except RetryExhausted as e:
            if e.last_error is not None:
                raise PaymentVerificationError(
                    f"Payment verification failed after {attempts} attempts: {e.last_error}"
                ) from e.last_error
            last = e.last_result or {}
            reason = last.get("gateway_response") or f"status {last.get('status') or 'unknown'}"
            raise PaymentVerificationError(
                f"Payment verification failed after {attempts} attempts: {reason}"
            ) from e

    def verify_manually(self, checkout_id: int) -> Checkout:
        checkout = self.repo.get(checkout_id)
        if checkout is None:
            raise NotFoundError("Checkout not found")
        if not checkout.payment_reference:
            raise InvalidStateError("No payment reference found for this checkout")
        if checkout.payment_status == PaymentStatus.PAID.value:
            raise InvalidStateError("Payment is already verified")
        set_request_context(checkout_id=checkout.id)

        reference = checkout.payment_reference
        try:
            transaction = self.verify_with_retry(reference)
            reason = rejection_reason(checkout, transaction)
            if reason:
                raise PaymentVerificationError(f"Payment verification failed: {reason}")
            return self._record_success(
                checkout.id, transaction, reference, NotificationEvent.PAYMENT_MANUALLY_VERIFIED
            )
        except PaymentVerificationError as e:
            self._record_failure_quietly(checkout.id, e.message)
            raise
        except Exception as e:
            self._record_failure_quietly(checkout.id, str(e))
            raise PaymentVerificationError(f"Payment verification failed: {e}") from e

    def _locate(self, reference: str, metadata: Any) -> Checkout:
        checkout = self.repo.find_by_reference(reference) if reference else None
        if checkout is None and isinstance(metadata, dict):
            checkout_id = metadata.get("checkoutId") or metadata.get("checkout_id")
            if checkout_id is not None and str(checkout_id).isdigit():
                checkout = self.repo.get(int(checkout_id))
            order_number = metadata.get("orderNumber") or metadata.get("order_number")
            if checkout is None and order_number:
                checkout = self.repo.find_by_order_number(str(order_number))
            if checkout is not None and checkout.payment_reference not in (None, reference):
                logger.warning(
                    f"Webhook reference {reference} differs from stored reference of {checkout.order_number}"
                )
                raise ValidationError(
                    f"Payment reference {reference} does not belong to order {checkout.order_number}"
                )
        if checkout is None:
            raise NotFoundError(f"No checkout found for payment reference {reference}")
        return checkout

    def _record_success(
        self,
        checkout_id: int,
        transaction: Dict[str, Any],
        reference: str,
        event: NotificationEvent,
    ) -> Checkout:
        details = extract_payment_details(transaction, reference).to_record()
        now = self.clock()
        paid_at = parse_gateway_timestamp(transaction.get("paid_at") or transaction.get("paidAt")) or now
        applied = []
        cancelled = []

        def mutate(checkout: Checkout):
            # Re-evaluated on fresh state; a concurrent writer may have won
            applied.clear()
            cancelled.clear()
            if checkout.payment_status == PaymentStatus.PAID.value:
                return False
            checkout.payment_status = PaymentStatus.PAID.value
            checkout.payment_details = details
            checkout.actual_delivery_date = paid_at
            # Cancelled is terminal: the payment is recorded, fulfilment stays closed
            if checkout.delivery_status == DeliveryStatus.CANCELLED.value:
                cancelled.append(True)
            elif checkout.delivery_status not in _PAST_PROCESSING:
                checkout.append_status(DeliveryStatus.UNDER_PROCESS, "Payment confirmed", now)
            applied.append(True)

        updated = self.repo.apply(checkout_id, mutate)
        if applied and cancelled:
            logger.warning(
                f"Payment received for cancelled order {updated.order_number}, refund required",
                extra={'extra_fields': {'method': details.get('method'), 'reference': reference}}
            )
            self.notifier.refund_required(updated)
        elif applied:
            logger.info(
                f"Payment confirmed for {updated.order_number}",
                extra={'extra_fields': {'method': details.get('method'), 'reference': reference}}
            )
            self.notifier.payment_succeeded(updated, event)
        else:
            logger.info(f"Order {updated.order_number} was already paid, nothing to apply")
        return updated

    def _record_failure(self, checkout_id: int, reason: str, channel: Optional[str] = None) -> Optional[Checkout]:
        failed_at = self.clock()
        applied = []

        def mutate(checkout: Checkout):
            if checkout.payment_status == PaymentStatus.PAID.value:
                return False
            checkout.payment_status = PaymentStatus.FAILED.value
            checkout.payment_details = FailedPaymentDetails(
                channel=channel or "unknown",
                failure_reason=reason,
                failed_at=failed_at,
                reference=checkout.payment_reference,
            ).to_record()
            applied.append(True)

        try:
            updated = self.repo.apply(checkout_id, mutate)
        except NotFoundError:
            logger.warning(f"Checkout {checkout_id} disappeared before its payment failure was recorded")
            return None
        if applied:
            logger.warning(f"Payment failed for {updated.order_number}: {reason}")
            self.notifier.payment_failed(updated, reason)
        return updated

    def _record_failure_quietly(self, checkout_id: int, reason: str) -> None:
        """Record a failure while another exception is already propagating."""
        try:
            self._record_failure(checkout_id, reason)
        except Exception:
            logger.exception(f"Could not record payment failure for checkout {checkout_id}")
