"""Error types and the wire-level error normalizer for the Maple proxy.

Every failure the proxy can report derives from ProxyError and carries a
``kind`` tag. normalize_error() maps each one to exactly one HTTP status and
OpenAI-style error document::

    {"error": {"message": "...", "type": "...", "param": null, "code": "..."}}
"""

from enum import Enum
from typing import Optional, Tuple

from fastapi.responses import JSONResponse

from maple_proxy.models import ErrorDetail, ErrorResponse

SECURE_CONNECTION_MESSAGE = "Failed to establish secure connection with Maple backend"


class ErrorKind(str, Enum):
    """Tag identifying which failure occurred."""

    AUTH_MISSING = "missing"
    AUTH_MALFORMED = "malformed"
    CONNECT_CONSTRUCTION = "construction"
    CONNECT_ATTESTATION = "attestation"
    BACKEND = "backend"
    STREAM_SERIALIZATION = "serialization"
    STREAM_TRANSPORT = "transport"


class ProxyError(Exception):
    """Base class for failures surfaced to proxy clients."""

    status_code = 500
    error_type = "server_error"
    code: Optional[str] = None

    def __init__(self, kind: ErrorKind, detail: str) -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(detail)

    def client_message(self) -> str:
        """Message safe to return to the caller."""
        return self.detail


class AuthenticationError(ProxyError):
    """Raised when no usable credential can be resolved."""

    status_code = 401
    error_type = "invalid_request_error"

    @property
    def code(self) -> str:  # type: ignore[override]
        if self.kind == ErrorKind.AUTH_MISSING:
            return "missing_api_key"
        return "invalid_authorization_header"


class SecureConnectError(ProxyError):
    """Raised when a verified backend session cannot be established.

    The detail is kept for logs only; clients always receive a generic
    message so backend internals are not echoed.
    """

    code = "secure_connection_failed"

    def client_message(self) -> str:
        return SECURE_CONNECTION_MESSAGE


class BackendError(ProxyError):
    """Raised when a backend operation fails after the session is verified."""

    code = "backend_error"

    def __init__(self, operation: str, cause: str) -> None:
        self.operation = operation
        self.cause = cause
        super().__init__(
            ErrorKind.BACKEND, "Failed to {}: {}".format(operation, cause)
        )


class StreamError(ProxyError):
    """Failure during an already-started event stream; reported in-band."""

    @property
    def code(self) -> str:  # type: ignore[override]
        if self.kind == ErrorKind.STREAM_SERIALIZATION:
            return "stream_serialization_error"
        return "stream_transport_error"


def error_document(
    message: str,
    error_type: str,
    param: Optional[str] = None,
    code: Optional[str] = None,
) -> ErrorResponse:
    """Build a wire error document."""
    return ErrorResponse(
        error=ErrorDetail(message=message, type=error_type, param=param, code=code)
    )


def normalize_error(exc: ProxyError) -> Tuple[int, ErrorResponse]:
    """Map a proxy failure to its HTTP status and wire error document."""
    body = error_document(
        exc.client_message(),
        exc.error_type,
        code=exc.code,
    )
    return exc.status_code, body


def error_response(exc: ProxyError) -> JSONResponse:
    """Render a proxy failure as a JSON response."""
    status, body = normalize_error(exc)
    return JSONResponse(status_code=status, content=body.model_dump())
