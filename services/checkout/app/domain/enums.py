from enum import Enum

from app.domain.errors import ValidationError


class PaymentType(str, Enum):
    PAYMENT_ON_DELIVERY = "payment_on_delivery"
    ONLINE_PAYMENT = "online_payment"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    UNDER_PROCESS = "under_process"
    OUT_FOR_DELIVERY = "out_for_delivery"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# No transition leaves these
TERMINAL_DELIVERY_STATUSES = frozenset({DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED})

# Not yet handed off for fulfilment
CANCELLABLE_DELIVERY_STATUSES = frozenset({DeliveryStatus.PENDING, DeliveryStatus.UNDER_PROCESS})

# A delivery payment can only be captured at the door
DELIVERY_PAYMENT_STATUSES = frozenset({DeliveryStatus.OUT_FOR_DELIVERY, DeliveryStatus.DELIVERED})

# Address snapshot may be corrected until the parcel leaves
ADDRESS_EDITABLE_STATUSES = CANCELLABLE_DELIVERY_STATUSES


class DeliveryPaymentMethod(str, Enum):
    CASH = "cash"
    POS = "pos"
    TRANSFER = "transfer"

    @property
    def recorded_method(self) -> str:
        """Value stored in ``payment_details.method``."""
        return f"{self.value}_on_delivery"


DELIVERY_RECORDED_METHODS = frozenset(m.recorded_method for m in DeliveryPaymentMethod)


class NotificationEvent(str, Enum):
    PAYMENT_ON_DELIVERY = "payment_on_delivery"
    ONLINE_PAYMENT = "online_payment"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_MANUALLY_VERIFIED = "payment_manually_verified"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_STATUS_UPDATE = "payment_status_update"
    DELIVERY_STATUS_UPDATE = "delivery_status_update"
    DELIVERY_PAYMENT_RECEIVED = "delivery_payment_received"
    AGENT_ASSIGNED = "agent_assigned"
    ADDRESS_UPDATED = "address_updated"
    CHECKOUT_CANCELLED = "checkout_cancelled"
    CHECKOUT_DELETED = "checkout_deleted"
    REFUND_REQUIRED = "refund_required"


def parse_enum(enum_cls, value, label: str):
    """Coerce ``value`` into ``enum_cls`` or raise ValidationError naming the field."""
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(f"Invalid {label}: {value!r}. Expected one of: {allowed}") from None
