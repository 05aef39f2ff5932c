"""Booking workflow errors.

Each error carries the HTTP status the API answers with, so routers can
let them propagate and a single handler renders ``{"error", "detail"}``.
"""
from fastapi import status


class BookingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, detail: str | None = None, **extra):
        self.detail = detail or self.default_detail()
        self.extra = extra
        super().__init__(self.detail)

    @property
    def error(self) -> str:
        return type(self).__name__

    def default_detail(self) -> str:
        return self.error

    def to_dict(self) -> dict:
        return {"error": self.error, "detail": self.detail, **self.extra}


class ValidationFailed(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST


class ListingNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND

    def default_detail(self) -> str:
        return "Listing not found."


class BookingNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND

    def default_detail(self) -> str:
        return "Booking not found."


class DocumentNotFound(BookingError):
    status_code = status.HTTP_404_NOT_FOUND

    def default_detail(self) -> str:
        return "Document not found."


class NotBookingParty(BookingError):
    status_code = status.HTTP_403_FORBIDDEN

    def default_detail(self) -> str:
        return "You are not allowed to act on this booking."


class DocumentsRequired(BookingError):
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, missing: list[str], detail: str | None = None):
        self.missing = sorted(missing)
        super().__init__(detail or "Required documents are missing.", missing=self.missing)


class InvalidState(BookingError):
    status_code = status.HTTP_409_CONFLICT

    def default_detail(self) -> str:
        return "Booking is not in a state that allows this action."


class PaymentAuthorizationFailed(BookingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED

    def default_detail(self) -> str:
        return "Payment could not be authorized."


class PaymentOperationFailed(BookingError):
    status_code = status.HTTP_502_BAD_GATEWAY

    def default_detail(self) -> str:
        return "Payment provider could not complete the operation. Please retry."
