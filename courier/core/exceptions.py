"""Custom exception classes for Courier.

Includes:
- Base exception carrying an error code and status
- RequestError hierarchy, one class per ErrorKind
- Helpers that classify transport failures into typed errors
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from courier.core.types import ErrorKind

if TYPE_CHECKING:
    from courier.models.request import RequestDescriptor

logger = logging.getLogger(__name__)


class CourierException(Exception):
    """Base exception for all Courier errors."""

    def __init__(
        self, detail: str, status_code: int | None = None, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self):
        """Convert exception to dictionary for logging or reporting."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


class ConfigurationError(CourierException):
    """Raised when a client is built with an unusable configuration."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, error_code="CONFIGURATION_ERROR")


# =============================================================================
# REQUEST ERRORS (one class per ErrorKind)
# =============================================================================


class RequestError(CourierException):
    """A failed request.

    Every failure a caller observes is a RequestError whose ``kind``
    decides whether it is retried. ``retry_count`` is stamped once, when
    the error leaves the retry loop.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        detail: str,
        *,
        kind: ErrorKind | None = None,
        request: RequestDescriptor | None = None,
        status: int | None = None,
        status_text: str = "",
        headers: dict[str, str] | None = None,
        data: Any = None,
        retry_count: int = 0,
    ):
        if kind is not None:
            self.kind = kind
        super().__init__(
            detail=detail,
            status_code=status,
            error_code=f"REQUEST_{self.kind.value.upper().replace('-', '_')}",
        )
        self.request = request
        self.status = status
        self.status_text = status_text
        self.headers = headers or {}
        self.data = data
        self.retry_count = retry_count

    @property
    def retryable(self) -> bool:
        return self.kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT, ErrorKind.SERVER)

    def for_request(self, request: RequestDescriptor) -> RequestError:
        """Copy this error for another request, chaining the original.

        Used where one physical failure fans out to many logical requests,
        so each caller owns its own error instance.
        """
        clone = RequestError(
            self.detail,
            kind=self.kind,
            request=request,
            status=self.status,
            status_text=self.status_text,
            headers=dict(self.headers),
            data=self.data,
            retry_count=self.retry_count,
        )
        clone.__cause__ = self
        return clone

    def to_dict(self):
        base = super().to_dict()
        base.update(
            {
                "kind": self.kind.value,
                "retry_count": self.retry_count,
                "url": self.request.url if self.request else None,
                "method": self.request.method.value if self.request else None,
            }
        )
        return base


class RequestTimeoutError(RequestError):
    """The transport gave up waiting for a response."""

    kind = ErrorKind.TIMEOUT


class NetworkError(RequestError):
    """The request never reached the server or the connection dropped."""

    kind = ErrorKind.NETWORK


class RequestCancelledError(RequestError):
    """The request was cancelled before or while executing."""

    kind = ErrorKind.CANCEL


class ServerError(RequestError):
    """The server answered with a 5xx status."""

    kind = ErrorKind.SERVER


class ClientError(RequestError):
    """The server rejected the request (4xx) or it was malformed."""

    kind = ErrorKind.CLIENT


class OfflineError(RequestError):
    """Rejected at admission: network is down and offline buffering is off."""

    kind = ErrorKind.OFFLINE


class NotCachedError(ClientError):
    """Raised for ``only-if-cached`` requests that miss the cache."""

    def __init__(self, request: RequestDescriptor):
        super().__init__(f"No cached response for {request.method} {request.url}", request=request)


class BatchMismatchError(RequestError):
    """A compound batch response did not line up with its members."""

    def __init__(self, request: RequestDescriptor, expected: int, received: int):
        super().__init__(
            f"Batch response mismatch: expected {expected} sub-responses, got {received}",
            request=request,
        )
        self.expected = expected
        self.received = received


# =============================================================================
# CLASSIFICATION
# =============================================================================


def error_from_status(
    status: int,
    *,
    request: RequestDescriptor | None = None,
    status_text: str = "",
    headers: dict[str, str] | None = None,
    data: Any = None,
) -> RequestError:
    """Build the typed error for an unsuccessful HTTP status."""
    cls: type[RequestError] = ServerError if status >= 500 else ClientError
    return cls(
        f"Request failed with status {status}",
        request=request,
        status=status,
        status_text=status_text,
        headers=headers,
        data=data,
    )


def classify_exception(exc: BaseException, request: RequestDescriptor | None = None) -> RequestError:
    """Map an arbitrary transport exception onto a RequestError.

    RequestErrors pass through untouched. Everything else is wrapped with
    the original chained as ``__cause__``.
    """
    if isinstance(exc, RequestError):
        if exc.request is None:
            exc.request = request
        return exc

    error: RequestError
    if isinstance(exc, TimeoutError):
        error = RequestTimeoutError(str(exc) or "Request timed out", request=request)
    elif isinstance(exc, asyncio.CancelledError):
        error = RequestCancelledError(str(exc) or "Request cancelled", request=request)
    elif isinstance(exc, (ConnectionError, OSError)):
        error = NetworkError(str(exc) or "Network error", request=request)
    else:
        logger.debug("Unclassified transport error %s: %s", type(exc).__name__, exc)
        error = RequestError(str(exc) or type(exc).__name__, request=request)
    error.__cause__ = exc
    return error
