"""Error taxonomy for the settlement service.

Every exception carries the HTTP status it maps to and whether it was caused
by the client. Client-caused errors become ``fail`` envelopes, everything else
becomes an ``error`` envelope.
"""

from typing import Any, Optional


class SettlementError(Exception):
    """Base class for all classified settlement errors.

    Attributes:
        message: Human-readable message shown to the caller
        status_code: HTTP status the error maps to
        error: Short label of the error class
        detail: Optional structured detail for the caller
    """

    status_code = 500
    error = "Internal Server Error"
    client_caused = False

    def __init__(self, message: str, detail: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_data(self) -> dict[str, Any]:
        """Return the payload placed in a fail envelope."""
        data = {"message": self.message, "error": self.error, "statusCode": self.status_code}
        data.update(self.detail)
        return data


class ValidationFailure(SettlementError):
    """Malformed or missing input, with one message per offending field."""

    status_code = 422
    error = "Validation failed"
    client_caused = True

    def __init__(self, message: str, validation: Optional[list[str]] = None, detail: Optional[dict] = None):
        super().__init__(message, detail)
        self.validation = validation or [message]

    def to_data(self) -> dict[str, Any]:
        data = super().to_data()
        data["validation"] = self.validation
        return data


class BusinessRuleViolation(SettlementError):
    """A client-caused failure originating from domain policy."""

    status_code = 400
    error = "Business rule violation"
    client_caused = True

    def __init__(self, rule: str, details: Optional[str] = None, detail: Optional[dict] = None):
        message = f"{rule}. {details}" if details else rule
        super().__init__(message, detail)
        self.rule = rule

    def to_data(self) -> dict[str, Any]:
        data = super().to_data()
        data["rule"] = self.rule
        return data


class ResourceNotFound(SettlementError):
    """A requested order, discount, price or obligation does not exist."""

    status_code = 404
    error = "Not Found"
    client_caused = True

    def __init__(self, resource: str, identifier: Any):
        super().__init__(f"{resource} with identifier '{identifier}' not found")
        self.resource = resource
        self.identifier = identifier


class DuplicateResource(SettlementError):
    """A unique value (such as a coupon code) is already taken."""

    status_code = 409
    error = "Conflict"
    client_caused = True

    def __init__(self, resource: str, field: str, value: Any):
        super().__init__(f"The {field} {value} is already registered for another {resource}")


class SecurityRejection(SettlementError):
    """A callback or webhook failed signature verification."""

    status_code = 400
    error = "Invalid signature"
    client_caused = True


class UpstreamFailure(SettlementError):
    """A payment gateway could not be reached or answered with an error."""

    status_code = 502
    error = "Bad Gateway"
    client_caused = False
