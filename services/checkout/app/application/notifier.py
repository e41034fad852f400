"""
Customer emails and admin notifications for order events.

Notifications are best effort: by the time they are sent the order change is
committed, so a sink failure is logged and never propagated.
"""

from typing import Any, Dict, Optional

from app.domain.enums import DeliveryPaymentMethod, NotificationEvent, PaymentType
from app.domain.models import Checkout
from app.infrastructure.notifications import LoggingNotificationSink, NotificationSink
from shared.core import get_logger

logger = get_logger(__name__)

PAYMENT_METHOD_LABELS = {
    "card": "Card",
    "bank_transfer": "Bank Transfer",
    "ussd": "USSD",
    "qr": "QR Code",
    "mobile_money": "Mobile Money",
    "eft": "EFT",
}

DELIVERY_METHOD_LABELS = {
    DeliveryPaymentMethod.CASH: "cash",
    DeliveryPaymentMethod.POS: "POS/Card",
    DeliveryPaymentMethod.TRANSFER: "bank transfer",
}


def payment_method_label(payment_details: Optional[Dict[str, Any]]) -> str:
    details = payment_details or {}
    method = details.get("method")
    label = PAYMENT_METHOD_LABELS.get(method, (method or "online payment").replace("_", " "))
    if method == "card" and details.get("last4"):
        brand = (details.get("brand") or details.get("card_type") or "").strip().title()
        label = f"{brand} card ending in {details['last4']}".strip()
    elif details.get("bank_name"):
        label = f"{label} ({details['bank_name']})"
    return label


def admin_payload(checkout: Checkout, reference: Optional[str] = None) -> Dict[str, Any]:
    details = checkout.user_details or {}
    country = details.get("country") or {}
    payload = {
        "checkoutId": checkout.id,
        "orderNumber": checkout.order_number,
        "customerName": checkout.customer_name,
        "firstName": details.get("firstName"),
        "lastName": details.get("lastName"),
        "email": details.get("email"),
        "address": details.get("address"),
        "country": country.get("name") if isinstance(country, dict) else country,
        "city": details.get("city"),
        "paymentType": checkout.payment_type,
        "paymentStatus": checkout.payment_status,
        "deliveryStatus": checkout.delivery_status,
        "totalAmount": float(checkout.total_amount),
    }
    if reference:
        payload["paymentReference"] = reference
    return payload


class CheckoutNotifier:
    def __init__(self, sink: Optional[NotificationSink] = None, currency: str = "NGN"):
        self.sink = sink or LoggingNotificationSink()
        self.currency = currency

    def admin_event(self, payload: Dict[str, Any], event: NotificationEvent) -> None:
        message = f"{payload.get('customerName')} - {event.value.replace('_', ' ')} - Order {payload.get('orderNumber')}"
        try:
            self.sink.notify_admin(event.value, message, payload)
        except Exception:
            logger.exception(f"Admin notification {event.value} failed for order {payload.get('orderNumber')}")

    def email(self, to: Optional[str], subject: str, body: str) -> None:
        if not to:
            logger.warning(f"No email address for '{subject}', skipping")
            return
        try:
            self.sink.send_email(to, subject, body)
        except Exception:
            logger.exception(f"Email '{subject}' to {to} failed")

    def _amount(self, checkout: Checkout) -> str:
        return f"{self.currency} {checkout.total_amount:,.2f}"

    @staticmethod
    def _first_name(checkout: Checkout) -> str:
        return (checkout.user_details or {}).get("firstName") or "Customer"

    @staticmethod
    def _email_of(checkout: Checkout) -> Optional[str]:
        return (checkout.user_details or {}).get("email")

    def checkout_created(self, checkout: Checkout) -> None:
        if checkout.payment_type == PaymentType.PAYMENT_ON_DELIVERY.value:
            self.email(
                self._email_of(checkout),
                "Checkout Successful",
                f"Dear {self._first_name(checkout)}, your order {checkout.order_number} "
                f"({self._amount(checkout)}) has been received. Payment will be collected on delivery. "
                f"Estimated delivery: {checkout.estimated_delivery_date:%Y-%m-%d}.",
            )
            self.admin_event(admin_payload(checkout), NotificationEvent.PAYMENT_ON_DELIVERY)
        else:
            self.admin_event(admin_payload(checkout, checkout.payment_reference), NotificationEvent.ONLINE_PAYMENT)

    def payment_succeeded(self, checkout: Checkout, event: NotificationEvent) -> None:
        details = checkout.payment_details or {}
        reference = details.get("reference") or checkout.payment_reference or "Not available"
        self.email(
            self._email_of(checkout),
            "Payment Successful",
            f"Dear {self._first_name(checkout)},\n\n"
            f"Your payment for order {checkout.order_number} has been confirmed.\n\n"
            f"Payment Details:\n"
            f"- Method: {payment_method_label(details)}\n"
            f"- Amount: {self._amount(checkout)}\n"
            f"- Reference: {reference}\n\n"
            f"Your order will be delivered to {checkout.delivery_address_summary} "
            f"by {checkout.estimated_delivery_date:%Y-%m-%d}.\n\nThank you for choosing us!",
        )
        self.admin_event(admin_payload(checkout, checkout.payment_reference), event)

    def payment_failed(self, checkout: Checkout, reason: str) -> None:
        self.email(
            self._email_of(checkout),
            "Payment Failed",
            f"Dear {self._first_name(checkout)}, your payment for order {checkout.order_number} "
            f"was unsuccessful. Reason: {reason}. Please try again or contact support.",
        )
        self.admin_event(admin_payload(checkout, checkout.payment_reference), NotificationEvent.PAYMENT_FAILED)

    def refund_required(self, checkout: Checkout) -> None:
        """Money arrived for an order that was already cancelled."""
        self.email(
            self._email_of(checkout),
            "Payment Received for Cancelled Order",
            f"Dear {self._first_name(checkout)}, we received {self._amount(checkout)} for order "
            f"{checkout.order_number}, which had already been cancelled. Our team will refund you shortly.",
        )
        self.admin_event(admin_payload(checkout, checkout.payment_reference), NotificationEvent.REFUND_REQUIRED)

    def payment_status_changed(self, checkout: Checkout) -> None:
        self.admin_event(admin_payload(checkout), NotificationEvent.PAYMENT_STATUS_UPDATE)

    def delivery_status_changed(self, checkout: Checkout) -> None:
        status = checkout.delivery_status.replace("_", " ")
        self.email(
            self._email_of(checkout),
            "Delivery Status Update",
            f"Dear {self._first_name(checkout)}, your order {checkout.order_number} delivery status is now: {status}",
        )
        self.admin_event(admin_payload(checkout), NotificationEvent.DELIVERY_STATUS_UPDATE)

    def agent_assigned(self, checkout: Checkout) -> None:
        agent = checkout.delivery_agent or {}
        lines = [
            f"Dear {self._first_name(checkout)},",
            "",
            f"Your order {checkout.order_number} is now {checkout.delivery_status.replace('_', ' ')}.",
            "",
            "Delivery Agent Details:",
            f"- Name: {agent.get('name')}",
            f"- Phone: {agent.get('phone')}",
            "",
            "The agent will contact you shortly to arrange delivery.",
        ]
        if checkout.payment_type == PaymentType.PAYMENT_ON_DELIVERY.value:
            lines += ["", "Payment Methods Available:", "- Cash on delivery", "- POS/Card payment", "- Bank transfer"]
        self.email(self._email_of(checkout), "Delivery Agent Assigned", "\n".join(lines))
        self.admin_event(admin_payload(checkout), NotificationEvent.AGENT_ASSIGNED)

    def delivery_payment_received(self, checkout: Checkout, method: DeliveryPaymentMethod) -> None:
        label = DELIVERY_METHOD_LABELS[method]
        self.email(
            self._email_of(checkout),
            "Payment Received - Order Delivered",
            f"Dear {self._first_name(checkout)},\n\n"
            f"Your order {checkout.order_number} has been delivered and payment of "
            f"{self._amount(checkout)} has been received via {label}.\n\n"
            f"Order Details:\n"
            f"- Order Number: {checkout.order_number}\n"
            f"- Amount: {self._amount(checkout)}\n"
            f"- Payment Method: {label}\n"
            f"- Delivered to: {checkout.delivery_address_summary}\n\n"
            f"Thank you for your business!",
        )
        self.admin_event(admin_payload(checkout), NotificationEvent.DELIVERY_PAYMENT_RECEIVED)

    def address_updated(self, checkout: Checkout) -> None:
        self.admin_event(admin_payload(checkout), NotificationEvent.ADDRESS_UPDATED)

    def checkout_removed(self, payload: Dict[str, Any], event: NotificationEvent) -> None:
        """``payload`` is captured before the row is deleted."""
        if event == NotificationEvent.CHECKOUT_CANCELLED:
            self.email(
                payload.get("email"),
                "Order Cancelled",
                f"Dear {payload.get('firstName') or 'Customer'}, your order {payload.get('orderNumber')} has been cancelled.",
            )
        self.admin_event(payload, event)
