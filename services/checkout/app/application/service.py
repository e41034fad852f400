"""
Checkout creation and the read side of orders.

Creation converts a cart (or an explicit product list) into an order record
with server-side prices and a frozen address snapshot, and for online
payment opens a hosted payment page at the gateway.
"""

import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

import pydantic
from sqlalchemy.orm import Session

from app.application.notifier import CheckoutNotifier, admin_payload
from app.application.pricing import PriceAggregator
from app.application.schemas import CheckoutCreate, CheckoutSearch, LineItemIn, UserDetails
from app.application.validator import CheckoutValidator
from app.core_settings import Settings, get_settings
from app.domain.enums import (
    ADDRESS_EDITABLE_STATUSES,
    DELIVERY_RECORDED_METHODS,
    DeliveryStatus,
    NotificationEvent,
    PaymentStatus,
    PaymentType,
)
from app.domain.errors import InvalidStateError, NotFoundError, PaymentInitError, ValidationError
from app.domain.models import Checkout, CheckoutItem, utcnow
from app.domain.payment_details import FailedPaymentDetails
from app.infrastructure.clients import AddressClient, CartClient, ProductCatalogClient
from app.infrastructure.paystack import PaystackClient
from app.infrastructure.repository import CheckoutRepository
from shared.core import get_logger, set_request_context

logger = get_logger(__name__)

_ORDER_ALPHABET = string.ascii_uppercase + string.digits
_REFERENCE_ALPHABET = string.ascii_lowercase + string.digits

ADDRESS_FIELDS = (
    "firstName", "lastName", "address", "landmark", "phoneNumber", "email",
    "location", "country", "state", "city", "postalCode",
)


def _epoch_millis(now: datetime) -> int:
    return int((now - datetime(1970, 1, 1)).total_seconds() * 1000)


def generate_order_number(now: Optional[datetime] = None) -> str:
    """``ORD-<epoch millis>-<6 uppercase alphanumerics>``"""
    suffix = "".join(secrets.choice(_ORDER_ALPHABET) for _ in range(6))
    return f"ORD-{_epoch_millis(now or utcnow())}-{suffix}"


def generate_payment_reference(now: Optional[datetime] = None) -> str:
    """``ref_<epoch millis>_<8 lowercase alphanumerics>``"""
    suffix = "".join(secrets.choice(_REFERENCE_ALPHABET) for _ in range(8))
    return f"ref_{_epoch_millis(now or utcnow())}_{suffix}"


@dataclass
class CheckoutResult:
    checkout: Checkout
    payment_url: Optional[str] = None


class CheckoutService:
    def __init__(
        self,
        db: Session,
        gateway: PaystackClient,
        catalog: ProductCatalogClient,
        cart: CartClient,
        addresses: AddressClient,
        notifier: Optional[CheckoutNotifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repo = CheckoutRepository(db)
        self.gateway = gateway
        self.cart = cart
        self.addresses = addresses
        self.pricing = PriceAggregator(catalog)
        self.validator = CheckoutValidator()
        self.notifier = notifier or CheckoutNotifier()
        self.settings = settings or get_settings()
        self.clock = clock

    # ---- creation -------------------------------------------------------

    def delivery_dates(self, payment_type: PaymentType, now: datetime) -> Tuple[datetime, datetime]:
        """(estimated delivery, cancellation deadline) for a new order."""
        estimated = now + timedelta(days=self.settings.DELIVERY_ESTIMATE_DAYS)
        if payment_type == PaymentType.ONLINE_PAYMENT:
            deadline = now + timedelta(days=self.settings.ONLINE_CANCELLATION_DAYS)
        else:
            deadline = now + timedelta(days=self.settings.DELIVERY_CANCELLATION_DAYS)
        return estimated, deadline

    def create_checkout(self, user_id: Optional[str], details: CheckoutCreate) -> CheckoutResult:
        payment_type = self.validator.validate_request(details.user_details, details.payment_type)

        items = list(details.products) or self._cart_items(user_id)
        self.validator.validate_line_items(items)

        user_details = self._resolve_address(user_id, details.user_details)
        priced = self.pricing.price(items)

        now = self.clock()
        estimated, deadline = self.delivery_dates(payment_type, now)
        online = payment_type == PaymentType.ONLINE_PAYMENT

        checkout = Checkout(
            order_number=generate_order_number(now),
            user=str(user_id) if user_id is not None else None,
            total_amount=priced.total,
            user_details=user_details,
            payment_type=payment_type.value,
            payment_status=PaymentStatus.PENDING.value,
            payment_reference=generate_payment_reference(now) if online else None,
            estimated_delivery_date=estimated,
            cancellation_deadline=deadline,
            created_at=now,
            updated_at=now,
            products=[
                CheckoutItem(
                    position=position,
                    product=item.product,
                    quantity=item.quantity,
                    size=item.size,
                    color=item.color,
                    price=item.price,
                    product_name=item.product_name,
                    product_snapshot=item.product_snapshot,
                )
                for position, item in enumerate(priced.items)
            ],
        )
        checkout.append_status(
            DeliveryStatus.UNDER_PROCESS if online else DeliveryStatus.PENDING,
            "Awaiting online payment" if online else "Order placed",
            now,
        )
        self.repo.add(checkout)
        set_request_context(checkout_id=checkout.id)
        logger.info(
            f"Checkout {checkout.order_number} created",
            extra={'extra_fields': {
                'payment_type': checkout.payment_type,
                'total_amount': str(checkout.total_amount),
                'items': len(checkout.products),
            }}
        )

        payment_url = None
        if online:
            payment_url = self._initialize_payment(checkout)

        if user_id is not None:
            self._clear_cart(user_id)
        self.notifier.checkout_created(checkout)
        return CheckoutResult(checkout=checkout, payment_url=payment_url)

    def _cart_items(self, user_id: Optional[str]) -> List[LineItemIn]:
        if user_id is None:
            raise ValidationError("At least one product is required")
        raw_items = self.cart.get_items(str(user_id))
        if not raw_items:
            raise ValidationError("Cart is empty, add products before checking out")
        items = []
        for raw in raw_items:
            product = raw.get("product")
            if isinstance(product, dict):
                product = product.get("id") or product.get("_id")
            try:
                items.append(LineItemIn(
                    product=str(product or raw.get("productId") or raw.get("product_id")),
                    quantity=int(raw.get("quantity", 1)),
                    size=str(raw.get("size", "")),
                    color=str(raw.get("color", "")),
                ))
            except (pydantic.ValidationError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid cart item: {e}") from e
        return items

    def _resolve_address(self, user_id: Optional[str], raw: Dict[str, Any]) -> Dict[str, Any]:
        address_id = raw.get("addressId")
        if address_id:
            if user_id is None:
                raise ValidationError("Saved addresses require a signed-in user")
            address = self.addresses.get_by_id(str(address_id), str(user_id))
            if not address:
                raise NotFoundError("Selected address not found")
            return self._snapshot(address)

        if user_id is None:
            return self._snapshot(raw)
        # Persisted (and geocoded) by the address book; its copy becomes the snapshot
        saved = self.addresses.create(str(user_id), self._snapshot(raw))
        return self._snapshot(saved or raw)

    @staticmethod
    def _snapshot(address: Dict[str, Any]) -> Dict[str, Any]:
        picked = {k: address.get(k) for k in ADDRESS_FIELDS if address.get(k) is not None}
        if isinstance(picked.get("country"), str):
            picked["country"] = {"name": picked["country"]}
        try:
            return UserDetails.model_validate(picked).to_record()
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid address details: {e.errors()[0].get('msg')}") from e

    def _initialize_payment(self, checkout: Checkout) -> str:
        metadata = {
            "checkoutId": checkout.id,
            "orderNumber": checkout.order_number,
            "userId": checkout.user,
        }
        try:
            response = self.gateway.initialize(
                email=checkout.user_details.get("email"),
                amount=checkout.total_amount,
                reference=checkout.payment_reference,
                metadata=metadata,
            )
        except Exception as e:
            self._mark_initialization_failed(checkout, str(e))
            raise PaymentInitError(f"Payment initialization failed: {e}") from e

        payment_url = (response or {}).get("authorization_url")
        if not payment_url:
            self._mark_initialization_failed(checkout, "Gateway returned no authorization URL")
            raise PaymentInitError("Payment initialization failed: no payment URL returned")
        return payment_url

    def _mark_initialization_failed(self, checkout: Checkout, reason: str) -> None:
        logger.error(f"Payment initialization failed for {checkout.order_number}: {reason}")
        failed_at = self.clock()

        def mutate(record: Checkout):
            if record.payment_status == PaymentStatus.PAID.value:
                return False
            record.payment_status = PaymentStatus.FAILED.value
            record.payment_details = FailedPaymentDetails(
                channel="unknown",
                failure_reason=reason,
                failed_at=failed_at,
                reference=record.payment_reference,
            ).to_record()

        self.repo.apply(checkout.id, mutate)

    def _clear_cart(self, user_id: str) -> None:
        try:
            self.cart.clear(str(user_id))
        except Exception as e:
            logger.warning(f"Failed to clear cart for user {user_id}: {e}")

    # ---- owner deletion -------------------------------------------------

    def delete_owned_order(self, checkout_id: int, user_id: str) -> None:
        """Hard delete by the owning user; other users get NotFound."""
        payload = {}

        def guard(checkout: Checkout) -> None:
            if checkout.user != str(user_id):
                raise NotFoundError("Checkout not found")
            payload.update(admin_payload(checkout))

        self.repo.remove(checkout_id, guard)
        logger.info(f"Checkout {checkout_id} deleted by its owner")
        self.notifier.checkout_removed(payload, NotificationEvent.CHECKOUT_DELETED)

    # ---- address correction --------------------------------------------

    def update_checkout_address(self, checkout_id: int, new_details: Dict[str, Any]) -> Checkout:
        self.validator.validate_address(new_details)
        snapshot = self._snapshot(new_details)

        def mutate(checkout: Checkout):
            if checkout.delivery_status not in {s.value for s in ADDRESS_EDITABLE_STATUSES}:
                raise InvalidStateError(
                    f"Address cannot be changed once the order is {checkout.delivery_status}"
                )
            checkout.user_details = snapshot

        updated = self.repo.apply(checkout_id, mutate)
        self.notifier.address_updated(updated)
        return updated

    # ---- read side ------------------------------------------------------

    def get_checkout(self, checkout_id: int) -> Checkout:
        return self.repo.get_or_raise(checkout_id)

    def list_checkouts(self, skip: int = 0, limit: int = 100) -> List[Checkout]:
        return self.repo.list(skip=skip, limit=limit)

    def list_user_checkouts(self, user_id: str) -> List[Checkout]:
        return self.repo.list_for_user(user_id)

    def list_delivered_orders(self, user_id: str) -> List[Checkout]:
        return self.repo.list_for_user(user_id, delivery_status=DeliveryStatus.DELIVERED.value)

    def search_checkouts(self, filters: CheckoutSearch) -> List[Checkout]:
        candidates = self.repo.filter(
            payment_status=filters.payment_status,
            delivery_status=filters.delivery_status,
        )

        def contains(value: Any, term: Optional[str]) -> bool:
            return term is None or (value is not None and term.lower() in str(value).lower())

        results = []
        for checkout in candidates:
            details = checkout.user_details or {}
            country = details.get("country") or {}
            country_name = country.get("name") if isinstance(country, dict) else country
            if (
                contains(details.get("email"), filters.email)
                and contains(details.get("firstName"), filters.first_name)
                and contains(details.get("lastName"), filters.last_name)
                and contains(checkout.payment_reference, filters.payment_reference)
                and contains(checkout.order_number, filters.order_number)
                and contains(country_name, filters.country)
                and contains(details.get("city"), filters.city)
            ):
                results.append(checkout)
        return results

    def get_location_statistics(self) -> List[Dict[str, Any]]:
        groups: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for checkout in self.repo.all():
            details = checkout.user_details or {}
            country = details.get("country") or {}
            key = (
                (country.get("name") if isinstance(country, dict) else country) or "Unknown",
                details.get("city") or "Unknown",
            )
            stats = groups.setdefault(key, {
                "country": key[0], "city": key[1],
                "totalOrders": 0, "totalAmount": Decimal("0"), "paidOrders": 0, "pendingOrders": 0,
            })
            stats["totalOrders"] += 1
            stats["totalAmount"] += checkout.total_amount
            if checkout.payment_status == PaymentStatus.PAID.value:
                stats["paidOrders"] += 1
            elif checkout.payment_status == PaymentStatus.PENDING.value:
                stats["pendingOrders"] += 1

        results = sorted(groups.values(), key=lambda s: s["totalOrders"], reverse=True)
        for stats in results:
            stats["totalAmount"] = float(stats["totalAmount"])
        return results

    def get_payment_method_statistics(self) -> Dict[str, Any]:
        by_status = {
            status: {"count": row["count"], "totalAmount": float(row["total"])}
            for status, row in self.repo.totals_by("payment_status").items()
        }
        by_type = {
            payment_type: {"count": row["count"], "totalAmount": float(row["total"])}
            for payment_type, row in self.repo.totals_by("payment_type").items()
        }
        online_paid = self.repo.totals_by(
            "payment_type",
            payment_status=PaymentStatus.PAID.value,
        ).get(PaymentType.ONLINE_PAYMENT.value, {"count": 0, "total": 0})
        delivery = self.get_delivery_payment_stats()
        return {
            "byPaymentStatus": by_status,
            "byPaymentType": by_type,
            "online": {"count": online_paid["count"], "totalAmount": float(online_paid["total"])},
            "delivery": delivery,
            "combined": {
                "paidOrders": online_paid["count"] + delivery["totalOrders"],
                "totalRevenue": float(online_paid["total"]) + delivery["totalAmount"],
            },
        }

    def get_delivery_payment_stats(self) -> Dict[str, Any]:
        """Captured pay-on-delivery payments grouped by how they were collected."""
        methods: Dict[str, Dict[str, Any]] = {
            method: {"count": 0, "totalAmount": Decimal("0")} for method in DELIVERY_RECORDED_METHODS
        }
        total_orders = 0
        total_amount = Decimal("0")
        paid = self.repo.filter(
            payment_type=PaymentType.PAYMENT_ON_DELIVERY.value,
            payment_status=PaymentStatus.PAID.value,
        )
        for checkout in paid:
            method = (checkout.payment_details or {}).get("method")
            if method not in DELIVERY_RECORDED_METHODS:
                continue
            stats = methods[method]
            stats["count"] += 1
            stats["totalAmount"] += checkout.total_amount
            total_orders += 1
            total_amount += checkout.total_amount

        return {
            "totalOrders": total_orders,
            "totalAmount": float(total_amount),
            "byMethod": {
                method: {"count": s["count"], "totalAmount": float(s["totalAmount"])}
                for method, s in sorted(methods.items())
            },
        }

    def get_pending_delivery_payments(self) -> List[Checkout]:
        return self.repo.find_pending_delivery_payments()
