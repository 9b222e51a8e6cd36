"""Response envelope codec.

Every response leaving the service is one of three shapes::

    {"status": "success", "data": ...}
    {"status": "fail", "data": ...}                        # client-caused, 4xx
    {"status": "error", "message": ..., "code"?, "data"?}  # server-caused, 5xx

A success payload shaped like ``{items, pagination}`` is the paginated
variant of success and is passed through as is.
"""

from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .exceptions import SettlementError, ValidationFailure
from .logger import get_logger

logger = get_logger("envelope")

STATUSES = ("success", "fail", "error")
PAGINATION_KEYS = ("page", "limit", "total")


class EnvelopeError(Exception):
    """Raised by :func:`decode` when an envelope does not carry success data.

    Attributes:
        envelope: The original envelope as received
    """

    def __init__(self, message: str, envelope: Any = None):
        super().__init__(message)
        self.envelope = envelope


class EnvelopeFailError(EnvelopeError):
    """The envelope reported a client-caused failure."""

    @property
    def data(self) -> Any:
        return self.envelope.get("data")


class EnvelopeServerError(EnvelopeError):
    """The envelope reported a server-caused error."""

    @property
    def code(self) -> Any:
        return self.envelope.get("code")


def success(data: Any) -> dict[str, Any]:
    return {"status": "success", "data": data}


def fail(data: Any) -> dict[str, Any]:
    return {"status": "fail", "data": data}


def error(message: str, code: Optional[int | str] = None, data: Any = None) -> dict[str, Any]:
    response: dict[str, Any] = {"status": "error", "message": message}
    if code is not None:
        response["code"] = code
    if data is not None:
        response["data"] = data
    return response


def paginated_success(items: list, pagination: dict[str, Any]) -> dict[str, Any]:
    return success({"items": items, "pagination": pagination})


def is_envelope(data: Any) -> bool:
    """Check whether ``data`` is already wrapped in an envelope."""
    return isinstance(data, dict) and data.get("status") in STATUSES and (
        "data" in data or "message" in data
    )


def is_paginated(data: Any) -> bool:
    """Check whether ``data`` is a ``{items, pagination}`` payload."""
    if not isinstance(data, dict) or set(data) != {"items", "pagination"}:
        return False
    pagination = data["pagination"]
    if hasattr(pagination, "model_dump"):
        pagination = pagination.model_dump()
    return (
        isinstance(data["items"], list)
        and isinstance(pagination, dict)
        and all(key in pagination for key in PAGINATION_KEYS)
    )


def encode(
    outcome: Any,
    *,
    method: str = "",
    path: str = "",
    expose_detail: bool = False,
) -> tuple[int, dict[str, Any]]:
    """Normalise an outcome into ``(http_status, envelope)``.

    Args:
        outcome: A payload, or an exception raised while producing one
        method: Request method, used for logging
        path: Request path, used for logging
        expose_detail: Attach exception detail to error envelopes (non-production only)

    Returns:
        The HTTP status code and the envelope dictionary
    """
    if not isinstance(outcome, BaseException):
        if is_envelope(outcome):
            return 200, outcome
        if is_paginated(outcome):
            return 200, paginated_success(outcome["items"], outcome["pagination"])
        return 200, success(outcome)

    if isinstance(outcome, SettlementError) and outcome.client_caused:
        status_code = outcome.status_code
        envelope = fail(outcome.to_data())
    elif isinstance(outcome, SettlementError):
        status_code = outcome.status_code
        envelope = error(outcome.message, status_code, (outcome.detail or None) if expose_detail else None)
    else:
        status_code = 500
        detail = {"type": type(outcome).__name__, "detail": str(outcome)} if expose_detail else None
        envelope = error("Internal server error", status_code, detail)

    log = logger.error if status_code >= 500 else logger.warning
    log(f"{method} {path} - {status_code} - {outcome}")
    return status_code, envelope


def respond(outcome: Any, status_code: int = 200) -> JSONResponse:
    """Encode a successful payload into a JSON response."""
    _, envelope = encode(outcome)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))


def decode(envelope: Any) -> Any:
    """Return the data of a success envelope.

    Raises:
        EnvelopeFailError: If the envelope is a fail envelope
        EnvelopeServerError: If the envelope is an error envelope
        EnvelopeError: If the value is not an envelope at all
    """
    if not is_envelope(envelope):
        raise EnvelopeError("Invalid envelope", envelope)
    status = envelope["status"]
    if status == "success":
        return envelope.get("data")
    if status == "fail":
        raise EnvelopeFailError(f"Request failed: {error_message(envelope)}", envelope)
    raise EnvelopeServerError(f"Server error: {envelope.get('message')}", envelope)


def safe_decode(envelope: Any) -> Any:
    """Return the data of a success envelope, or None for anything else."""
    try:
        return decode(envelope)
    except EnvelopeError:
        return None


def error_message(envelope: Any, default: str = "An error occurred") -> str:
    """Extract a user-facing message from a fail or error envelope."""
    if not is_envelope(envelope):
        return default
    if envelope["status"] == "error":
        return envelope.get("message") or default
    if envelope["status"] != "fail":
        return default
    data = envelope.get("data")
    if isinstance(data, str):
        return data
    if isinstance(data, dict):
        validation = data.get("validation")
        if isinstance(validation, list) and validation:
            return str(validation[0])
        if isinstance(data.get("message"), str):
            return data["message"]
    return default


def _field_messages(exc: RequestValidationError) -> list[str]:
    messages = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        messages.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
    return messages


def install_envelope_handlers(app: FastAPI, expose_detail: bool = False) -> None:
    """Register exception handlers that answer every failure with an envelope.

    Args:
        app: The FastAPI application
        expose_detail: Include exception detail in error envelopes
    """

    def _reply(request: Request, exc: BaseException) -> JSONResponse:
        status_code, envelope = encode(
            exc, method=request.method, path=request.url.path, expose_detail=expose_detail
        )
        return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError):
        return _reply(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = _field_messages(exc)
        return _reply(request, ValidationFailure("Validation failed", validation=messages))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code < 500:
            status_code, envelope = exc.status_code, fail({"message": exc.detail, "statusCode": exc.status_code})
            logger.warning(f"{request.method} {request.url.path} - {status_code} - {exc.detail}")
        else:
            status_code, envelope = exc.status_code, error(str(exc.detail), exc.status_code)
            logger.error(f"{request.method} {request.url.path} - {status_code} - {exc.detail}")
        return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled exception on {request.method} {request.url.path}")
        return _reply(request, exc)
