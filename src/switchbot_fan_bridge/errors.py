"""Failure taxonomy and the shared recovery policy."""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, Iterable, Optional, Protocol

from .metrics import record_failure


class BridgeError(Exception):
    """Base class for bridge failures."""


class ConfigurationError(BridgeError):
    """Missing credentials or cloud usage required but disabled."""


class TransportError(BridgeError):
    """Network, timeout, or non-success status from a transport."""

    def __init__(
        self,
        message: str,
        *,
        transport: str = "unknown",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.transport = transport
        self.status_code = status_code


class MalformedPayloadError(BridgeError):
    """Inbound payload could not be parsed into a state mutation."""


class FatalProjectionError(BridgeError):
    """Unexpected local failure surfaced to the host projection as an error marker."""


class FailureKind(str, enum.Enum):
    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    MALFORMED = "malformed"
    FATAL = "fatal"


_STATUS_MESSAGES: Dict[int, str] = {
    100: "Command successfully sent",
    151: "Command not supported by this deviceType",
    152: "Device not found",
    160: "Command is not supported",
    161: "Device is offline",
    171: "Hub Device is offline",
    190: (
        "Device internal error due to device states not synchronized with server, "
        "or command format is invalid"
    ),
    200: "Request successful",
    400: "Bad Request, an invalid payload request",
    401: "Unauthorized, Authorization for the API is required, but the request has not been authenticated",
    403: (
        "Forbidden, The request has been authenticated but does not have appropriate permissions, "
        "or a requested resource is not found"
    ),
    404: "Not Found, Specifies the requested path does not exist",
    406: "Not Acceptable, a MIME type has been requested via the Accept header for a value not supported by the server",
    415: "Unsupported Media Type, a contentType header has been defined that is not supported by the server",
    422: (
        "Unprocessable Entity, a valid request has been made, but the server cannot process it. "
        "This is often used for APIs for which certain limits have been exceeded"
    ),
    429: "Too Many Requests, exceeded the number of requests allowed for a given time window",
    500: "Internal Server Error, An unexpected error occurred. These errors should be rare",
}

SUCCESS_STATUS_CODES = frozenset({100, 200})


def describe_status_code(code: Optional[int]) -> str:
    """Return a human readable description for a SwitchBot API status code."""

    if code is None:
        return "No status code"
    return _STATUS_MESSAGES.get(code, f"Unknown statusCode: {code}")


def classify(exc: BaseException) -> FailureKind:
    if isinstance(exc, ConfigurationError):
        return FailureKind.CONFIGURATION
    if isinstance(exc, (TransportError, asyncio.TimeoutError, OSError)):
        return FailureKind.TRANSIENT
    if isinstance(exc, MalformedPayloadError):
        return FailureKind.MALFORMED
    return FailureKind.FATAL


class ErrorMarkerSink(Protocol):
    def mark_error(self, characteristics: Iterable[str], error: BaseException) -> None:
        ...


# Characteristics that go into the error state when a cycle fails locally.
FAULT_CHARACTERISTICS = ("active", "rotation_speed", "swing_enabled")


class ErrorPolicy:
    """Classify failures at the dispatcher/scheduler boundary and recover.

    Nothing handled here is re-raised: configuration problems are logged,
    transport problems are logged as warnings (retry and fallback already
    happened in the dispatcher), malformed payloads are dropped, and any
    other exception is turned into an error marker on the projection.
    """

    def __init__(
        self,
        device_id: str,
        logger: logging.Logger,
        projection: Optional[ErrorMarkerSink] = None,
    ) -> None:
        self.device_id = device_id
        self.logger = logger
        self.projection = projection

    def handle(self, exc: BaseException, operation: str) -> FailureKind:
        if isinstance(exc, asyncio.CancelledError):
            raise exc
        kind = classify(exc)
        record_failure(operation, kind.value)
        context: Dict[str, Any] = {
            "device_id": self.device_id,
            "operation": operation,
            "failure": kind.value,
        }
        if kind is FailureKind.CONFIGURATION:
            self.logger.error("Configuration error: %s", exc, extra=context)
        elif kind is FailureKind.TRANSIENT:
            status_code = getattr(exc, "status_code", None)
            if status_code is not None:
                context["status_code"] = status_code
                context["status_message"] = describe_status_code(status_code)
            self.logger.warning("Transport failure: %s", exc, extra=context)
        elif kind is FailureKind.MALFORMED:
            self.logger.warning("Dropping malformed payload: %s", exc, extra=context)
        else:
            self.logger.error(
                "Unexpected failure; marking characteristics as errored",
                extra=context,
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            if self.projection is not None:
                marker = exc if isinstance(exc, FatalProjectionError) else FatalProjectionError(str(exc))
                self.projection.mark_error(FAULT_CHARACTERISTICS, marker)
        return kind
