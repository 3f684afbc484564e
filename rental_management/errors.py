from __future__ import annotations


class RentalError(Exception):
    """Base class for every domain failure raised by the rental services.

    ``code`` is the machine readable identifier returned to API clients and
    ``status_code`` the HTTP status the app maps the error to.
    """

    code = "rental_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None, **context) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        self.context = context
        super().__init__(self.message)

    def to_detail(self) -> dict:
        detail = {"error": self.code, "message": self.message}
        if self.retryable:
            detail["retryable"] = True
        if self.context:
            detail["context"] = self.context
        return detail


class InsufficientInventory(RentalError):
    """Requested quantity is not available for the requested window."""

    code = "insufficient_inventory"
    status_code = 409


class InvalidTransition(RentalError):
    """Booking cannot move to the requested state from its current state."""

    code = "invalid_transition"
    status_code = 409


class InvalidDuration(RentalError):
    """Rental window is empty or reversed."""

    code = "invalid_duration"


class NoApplicableRate(RentalError):
    """Product has no rate for the requested unit."""

    code = "no_applicable_rate"


class OverpaymentNotAllowed(RentalError):
    """Payment exceeds the outstanding balance."""

    code = "overpayment_not_allowed"


class InvalidQuantity(RentalError):
    """Quantity would break the inventory counters."""

    code = "invalid_quantity"


class ConcurrencyConflict(RentalError):
    """Record was changed by another writer; reload and retry."""

    code = "concurrency_conflict"
    status_code = 409
    retryable = True


class NotFound(RentalError):
    """Requested record does not exist."""

    code = "not_found"
    status_code = 404
