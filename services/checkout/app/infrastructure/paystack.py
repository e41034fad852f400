"""Paystack transaction API client."""

import hashlib
import hmac
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx

from app.core_settings import Settings
from app.domain.errors import UpstreamServiceError
from shared.core import get_logger

logger = get_logger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Major currency units to the gateway's minor units (x100)."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaystackClient:
    def __init__(
        self,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 15.0,
        callback_url: Optional[str] = None,
        currency: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.callback_url = callback_url
        self.currency = currency
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaystackClient":
        return cls(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
            callback_url=settings.PAYSTACK_CALLBACK_URL,
            currency=settings.CURRENCY,
        )

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={
                "Authorization": f"Bearer {self.secret_key}",
                "Content-Type": "application/json",
            },
        )

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            with self._client() as client:
                response = client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Paystack {method} {path} failed: {e}")
            raise UpstreamServiceError(f"Payment gateway unreachable: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400 or body.get("status") is False:
            message = body.get("message") or response.text or f"HTTP {response.status_code}"
            logger.warning(f"Paystack {method} {path} returned {response.status_code}: {message}")
            raise UpstreamServiceError(f"Payment gateway error: {message}")
        return body.get("data") or {}

    def initialize(
        self,
        email: str,
        amount: Decimal,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Start a hosted-checkout transaction.

        ``amount`` is in major units. Returns the gateway's ``data`` object
        (``authorization_url``, ``access_code``, ``reference``).
        """
        payload: Dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),
            "reference": reference,
            "metadata": metadata or {},
        }
        if self.callback_url:
            payload["callback_url"] = self.callback_url
        if self.currency:
            payload["currency"] = self.currency
        return self._request("POST", "/transaction/initialize", json=payload)

    def verify(self, reference: str) -> Dict[str, Any]:
        """Transaction as the gateway sees it; ``status`` is ``success`` once paid."""
        return self._request("GET", f"/transaction/verify/{reference}")

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """Webhook ``x-paystack-signature``: HMAC-SHA512 of the raw body."""
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode(), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature)
