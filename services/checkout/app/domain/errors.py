"""Checkout error taxonomy.

Every error the service raises deliberately derives from ``CheckoutError``
and carries the HTTP status the API layer answers with.
"""


class CheckoutError(Exception):
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CheckoutError):
    """Input rejected before any record was written."""
    status_code = 400


class NotFoundError(CheckoutError):
    status_code = 404


class InvalidStateError(CheckoutError):
    """The record exists but its current state forbids the operation."""
    status_code = 409


class ConcurrentUpdateError(InvalidStateError):
    """Compare-and-set kept losing against concurrent writers."""


class PaymentInitError(CheckoutError):
    status_code = 502


class PaymentVerificationError(CheckoutError):
    status_code = 402


class UpstreamServiceError(CheckoutError):
    """A collaborator (catalog, cart, address book, gateway) failed at the transport level."""
    status_code = 502
