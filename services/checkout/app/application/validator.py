import math
import re
from typing import Any, Dict, Iterable

from app.domain.enums import PaymentType, parse_enum
from app.domain.errors import ValidationError

REQUIRED_ADDRESS_FIELDS = ("firstName", "lastName", "address", "phoneNumber", "email")
ADDRESS_ID_PATTERN = re.compile(r"^[0-9A-Za-z_-]{1,64}$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _is_number(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        try:
            return math.isfinite(float(value))
        except ValueError:
            return False
    return False


class CheckoutValidator:
    """Rejects a checkout request before anything is persisted."""

    def validate_request(self, user_details: Dict[str, Any], payment_type: str) -> PaymentType:
        payment = parse_enum(PaymentType, payment_type, "payment type")

        if not isinstance(user_details, dict):
            raise ValidationError("User details are required")

        address_id = user_details.get("addressId")
        if address_id:
            if not ADDRESS_ID_PATTERN.match(str(address_id)):
                raise ValidationError("Invalid address ID format")
            return payment

        self.validate_address(user_details)
        return payment

    def validate_address(self, details: Dict[str, Any]) -> None:
        """Inline address: required fields, email shape and numeric coordinates."""
        for field in REQUIRED_ADDRESS_FIELDS:
            value = details.get(field)
            if value is None or not str(value).strip():
                raise ValidationError(f"{field} is required")

        if not EMAIL_PATTERN.match(str(details["email"]).strip()):
            raise ValidationError("Invalid email address")

        location = details.get("location")
        if location is None:
            return
        if not isinstance(location, dict):
            raise ValidationError("Invalid location coordinates")
        for axis, limit in (("lat", 90), ("lng", 180)):
            value = location.get(axis)
            if value is None:
                continue
            if not _is_number(value) or abs(float(value)) > limit:
                raise ValidationError("Invalid location coordinates")

    def validate_line_items(self, items: Iterable[Any]) -> None:
        items = list(items)
        if not items:
            raise ValidationError("At least one product is required")
        for item in items:
            if item.quantity < 1:
                raise ValidationError(f"Invalid quantity for product {item.product}")
