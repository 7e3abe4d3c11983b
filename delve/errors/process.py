"""Supervised process error classes."""

from __future__ import annotations

from typing import Any

from delve.errors.base import DelveError, ErrorCode


class ServiceError(DelveError):
    """Base error for service-related issues."""

    default_message = "Service error"
    default_code = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str | None = None,
        *,
        service_name: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if service_name:
            details["service_name"] = service_name
        super().__init__(message, code=code, details=details, cause=cause)


class ServiceStartError(ServiceError):
    """Error starting a service."""

    default_message = "Failed to start service"
    default_code = ErrorCode.SVC_START_FAILED


class ServiceStopError(ServiceError):
    """Error stopping a service."""

    default_message = "Failed to stop service"
    default_code = ErrorCode.SVC_STOP_FAILED


class ProcessStartupTimeoutError(ServiceStartError):
    """Raised when a spawned process never answers its health endpoint in time."""

    default_message = "Process did not become ready in time"
    default_code = ErrorCode.SVC_STARTUP_TIMEOUT

    def __init__(
        self,
        message: str | None = None,
        *,
        timeout_seconds: float | None = None,
        service_name: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if timeout_seconds is not None:
            details["timeout_seconds"] = timeout_seconds
        super().__init__(
            message, service_name=service_name, code=code, details=details, cause=cause
        )


class PortUnavailableError(ServiceError):
    """Raised when a local TCP port cannot be bound."""

    default_message = "No available port"
    default_code = ErrorCode.SVC_PORT_UNAVAILABLE

    def __init__(
        self,
        message: str | None = None,
        *,
        port: int | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if port is not None:
            details["port"] = port
        self.port = port
        super().__init__(message, code=code, details=details, cause=cause)


class BinaryInvalidError(ServiceError):
    """Raised when the runtime binary is missing or fails verification."""

    default_message = "Runtime binary is invalid"
    default_code = ErrorCode.SVC_BINARY_INVALID
