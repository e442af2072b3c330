"""Error taxonomy for the store service.

Every error a caller is expected to see derives from :class:`StoreError`
and carries the HTTP status it maps to plus a message that is safe to
return to the client.  Anything that is *not* a ``StoreError`` is treated
as an infrastructure failure by the HTTP layer and reported as a generic
500.
"""

from __future__ import annotations

from typing import Any, Dict


class StoreError(Exception):
    """Base class for errors that are reported to the caller."""

    status: int = 500
    default_message: str = "Internal server error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


class ValidationError(StoreError):
    status = 400
    default_message = "Invalid request."


class NotFound(StoreError):
    status = 404
    default_message = "Not found."


class ProductNotFound(NotFound):
    default_message = "Product not found."


class Conflict(StoreError):
    status = 409
    default_message = "Conflict."


class Unauthorized(StoreError):
    status = 401
    default_message = "Authorization token is missing."


class Forbidden(StoreError):
    status = 403
    default_message = "Invalid token."


class BusinessRejection(StoreError):
    """An expected, user-actionable refusal of a domain rule."""

    status = 400
    code = "BusinessRejection"

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "error": self.code}


class EmptyCart(BusinessRejection):
    code = "EmptyCart"
    default_message = "Your cart is empty."


class InsufficientStock(BusinessRejection):
    code = "InsufficientStock"

    def __init__(self, product_id: int) -> None:
        self.product_id = product_id
        super().__init__(f"Insufficient stock for product ID {product_id}.")

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["product_id"] = self.product_id
        return body


class InternalError(StoreError):
    """Store or connectivity failure.  The message never carries detail."""

    status = 500
