"""
Payment details stored on an order.

The ``payment_details`` JSON column holds exactly one of the variants below,
tagged by ``method``. Gateway variants are built from a verified transaction,
delivery variants from a capture recorded at the door, and ``failed`` from a
failed initialization or verification.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict

from app.domain.enums import DELIVERY_RECORDED_METHODS

FAILED_METHOD = "failed"

# Gateway channel -> stored method
CHANNEL_METHODS = {
    "card": "card",
    "bank": "bank_transfer",
    "dedicated_nuban": "bank_transfer",
    "bank_transfer": "bank_transfer",
    "ussd": "ussd",
    "qr": "qr",
    "mobile_money": "mobile_money",
    "eft": "eft",
}


class PaymentDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    method: str
    channel: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class GatewayPaymentDetails(PaymentDetails):
    reference: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None
    paid_at: Optional[str] = None
    gateway_response: Optional[str] = None
    fees: Optional[float] = None
    customer_code: Optional[str] = None
    authorization_code: Optional[str] = None


class CardPaymentDetails(GatewayPaymentDetails):
    card_type: Optional[str] = None
    last4: Optional[str] = None
    exp_month: Optional[str] = None
    exp_year: Optional[str] = None
    bank: Optional[str] = None
    brand: Optional[str] = None
    country_code: Optional[str] = None
    bin: Optional[str] = None
    reusable: Optional[bool] = None
    signature: Optional[str] = None
    account_name: Optional[str] = None


class BankTransferPaymentDetails(GatewayPaymentDetails):
    account_name: Optional[str] = None
    account_number: Optional[str] = None
    bank_code: Optional[str] = None
    bank_name: Optional[str] = None
    session_id: Optional[str] = None


class UssdPaymentDetails(GatewayPaymentDetails):
    ussd_code: Optional[str] = None
    bank_name: Optional[str] = None


class QrPaymentDetails(GatewayPaymentDetails):
    provider: Optional[str] = None


class MobileMoneyPaymentDetails(GatewayPaymentDetails):
    phone_number: Optional[str] = None
    provider: Optional[str] = None


class EftPaymentDetails(GatewayPaymentDetails):
    bank_name: Optional[str] = None
    account_name: Optional[str] = None


class DeliveryCapture(BaseModel):
    actual_method: str
    received_by: str
    received_at: datetime
    notes: str = ""
    pos_terminal: Optional[str] = None
    transfer_reference: Optional[str] = None
    confirmed_by: Optional[str] = None
    confirmed_at: Optional[datetime] = None


class DeliveryPaymentDetails(PaymentDetails):
    delivery_payment_details: DeliveryCapture


class FailedPaymentDetails(PaymentDetails):
    method: str = FAILED_METHOD
    failure_reason: str
    failed_at: datetime
    reference: Optional[str] = None


_GATEWAY_VARIANTS: Dict[str, Type[GatewayPaymentDetails]] = {
    "card": CardPaymentDetails,
    "bank_transfer": BankTransferPaymentDetails,
    "ussd": UssdPaymentDetails,
    "qr": QrPaymentDetails,
    "mobile_money": MobileMoneyPaymentDetails,
    "eft": EftPaymentDetails,
}


def normalize_payment_method(channel: Optional[str]) -> str:
    if not channel:
        return "unknown"
    return CHANNEL_METHODS.get(channel, channel)


def parse_payment_details(data: Optional[Dict[str, Any]]) -> Optional[PaymentDetails]:
    """Load the stored JSON back into its variant."""
    if not data:
        return None
    method = data.get("method")
    if method == FAILED_METHOD:
        return FailedPaymentDetails.model_validate(data)
    if method in DELIVERY_RECORDED_METHODS:
        return DeliveryPaymentDetails.model_validate(data)
    return _GATEWAY_VARIANTS.get(method, GatewayPaymentDetails).model_validate(data)


def minor_to_major(value: Any) -> Optional[float]:
    """Gateway amounts arrive in minor units (kobo, cents)."""
    if value is None or value == "":
        return None
    try:
        return float(Decimal(str(value)) / 100)
    except (InvalidOperation, ValueError):
        return None


def _text(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def extract_payment_details(transaction: Dict[str, Any], reference: Optional[str] = None) -> GatewayPaymentDetails:
    """
    Build the stored payment details from a verified gateway transaction.

    Unknown channels keep the common fields with ``method`` set to the raw
    channel name.
    """
    channel = transaction.get("channel")
    method = normalize_payment_method(channel)
    authorization = transaction.get("authorization") or {}
    customer = transaction.get("customer") or {}
    metadata = transaction.get("metadata")
    metadata = metadata if isinstance(metadata, dict) else {}

    base = {
        "method": method,
        "channel": channel,
        "reference": transaction.get("reference") or reference,
        "amount": minor_to_major(transaction.get("amount")),
        "currency": transaction.get("currency"),
        "paid_at": _text(transaction.get("paid_at") or transaction.get("paidAt")),
        "gateway_response": transaction.get("gateway_response"),
        "fees": minor_to_major(transaction.get("fees")),
        "customer_code": customer.get("customer_code") or transaction.get("customerCode"),
        "authorization_code": authorization.get("authorization_code"),
    }

    if method == "card":
        extra = {
            "card_type": authorization.get("card_type"),
            "last4": _text(authorization.get("last4")),
            "exp_month": _text(authorization.get("exp_month")),
            "exp_year": _text(authorization.get("exp_year")),
            "bank": authorization.get("bank"),
            "brand": authorization.get("brand"),
            "country_code": authorization.get("country_code"),
            "bin": _text(authorization.get("bin")),
            "reusable": authorization.get("reusable"),
            "signature": authorization.get("signature"),
            "account_name": authorization.get("account_name"),
        }
    elif method == "bank_transfer":
        extra = {
            "account_name": authorization.get("account_name") or metadata.get("account_name"),
            "account_number": _text(authorization.get("account_number") or metadata.get("account_number")),
            "bank_code": _text(authorization.get("bank_code") or metadata.get("bank_code")),
            "bank_name": authorization.get("bank") or metadata.get("bank_name"),
            "session_id": _text(authorization.get("session_id") or metadata.get("session_id")),
        }
    elif method == "ussd":
        extra = {
            "ussd_code": _text(authorization.get("ussd_code") or metadata.get("ussd_code")),
            "bank_name": authorization.get("bank") or metadata.get("bank_name"),
        }
    elif method == "qr":
        extra = {"provider": authorization.get("provider") or metadata.get("provider")}
    elif method == "mobile_money":
        extra = {
            "phone_number": _text(authorization.get("mobile_money_number") or metadata.get("phone_number")),
            "provider": authorization.get("provider") or metadata.get("provider"),
        }
    elif method == "eft":
        extra = {
            "bank_name": authorization.get("bank") or metadata.get("bank_name"),
            "account_name": authorization.get("account_name") or metadata.get("account_name"),
        }
    else:
        extra = {}

    return _GATEWAY_VARIANTS.get(method, GatewayPaymentDetails)(**base, **extra)
