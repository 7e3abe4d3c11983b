"""Base error classes and error codes for delve.

Contains ErrorCode enum, DelveError base class, and ConfigurationError.
All delve-specific exceptions inherit from DelveError.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Standard error codes for delve errors.

    These codes can be used to programmatically identify error types
    and are included in the result dicts returned by the bridge.
    """

    # Configuration errors (CFG_*)
    CFG_INVALID = "CFG_INVALID"
    CFG_MISSING = "CFG_MISSING"
    CFG_MIGRATION_FAILED = "CFG_MIGRATION_FAILED"

    # Network errors (NET_*)
    NET_UNREACHABLE = "NET_UNREACHABLE"
    NET_TIMEOUT = "NET_TIMEOUT"
    NET_HTTP_STATUS = "NET_HTTP_STATUS"
    NET_REDIRECT_LOOP = "NET_REDIRECT_LOOP"

    # Download errors (DL_*)
    DL_RANGE_MISMATCH = "DL_RANGE_MISMATCH"
    DL_SIZE_MISMATCH = "DL_SIZE_MISMATCH"
    DL_INCOMPLETE = "DL_INCOMPLETE"
    DL_HEADER_INVALID = "DL_HEADER_INVALID"
    DL_HASH_MISMATCH = "DL_HASH_MISMATCH"

    # Model errors (MDL_*)
    MDL_LOAD_FAILED = "MDL_LOAD_FAILED"
    MDL_NOT_FOUND = "MDL_NOT_FOUND"
    MDL_NOT_LOADED = "MDL_NOT_LOADED"
    MDL_UNKNOWN = "MDL_UNKNOWN"
    MDL_UNKNOWN_MODE = "MDL_UNKNOWN_MODE"
    MDL_GENERATION_FAILED = "MDL_GENERATION_FAILED"
    MDL_INVALID_REQUEST = "MDL_INVALID_REQUEST"
    MDL_BUSY = "MDL_BUSY"

    # Service errors (SVC_*)
    SVC_START_FAILED = "SVC_START_FAILED"
    SVC_STOP_FAILED = "SVC_STOP_FAILED"
    SVC_STARTUP_TIMEOUT = "SVC_STARTUP_TIMEOUT"
    SVC_PORT_UNAVAILABLE = "SVC_PORT_UNAVAILABLE"
    SVC_BINARY_INVALID = "SVC_BINARY_INVALID"

    # Resource errors (RES_*)
    RES_MEMORY_LOW = "RES_MEMORY_LOW"
    RES_MEMORY_EXHAUSTED = "RES_MEMORY_EXHAUSTED"
    RES_DISK_ACCESS = "RES_DISK_ACCESS"
    RES_PLATFORM_UNSUPPORTED = "RES_PLATFORM_UNSUPPORTED"

    # Generic errors
    UNKNOWN = "UNKNOWN"


class DelveError(Exception):
    """Base exception for all delve errors.

    All delve-specific exceptions inherit from this class, enabling
    consistent error handling patterns across the codebase.

    Attributes:
        message: Human-readable error message.
        code: Machine-readable error code from ErrorCode enum.
        details: Optional additional context about the error.
        cause: Optional original exception that caused this error.
        retryable: Whether the failed operation may succeed if attempted again.
    """

    default_message: str = "An error occurred"
    default_code: ErrorCode = ErrorCode.UNKNOWN
    retryable: bool = False

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.details = details or {}
        self.cause = cause

        super().__init__(self.message)

        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message

    def __repr__(self) -> str:
        parts = [f"{self.__class__.__name__}({self.message!r}"]
        if self.code != self.default_code:
            parts.append(f", code={self.code.value!r}")
        if self.details:
            parts.append(f", details={self.details!r}")
        if self.cause:
            parts.append(f", cause={self.cause!r}")
        parts.append(")")
        return "".join(parts)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to a dictionary for result payloads."""
        result: dict[str, Any] = {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "detail": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Configuration Errors


class ConfigurationError(DelveError):
    """Raised for configuration and settings issues."""

    default_message = "Configuration error"
    default_code = ErrorCode.CFG_INVALID

    def __init__(
        self,
        message: str | None = None,
        *,
        config_key: str | None = None,
        config_path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if config_key:
            details["config_key"] = config_key
        if config_path:
            details["config_path"] = config_path
        super().__init__(message, code=code, details=details, cause=cause)


# Resource Errors


class ResourceError(DelveError):
    """Raised when a system resource (memory, disk, platform) is insufficient."""

    default_message = "Resource error"
    default_code = ErrorCode.RES_MEMORY_LOW


class UnsupportedPlatformError(ResourceError):
    """Raised when no runtime binary exists for the current platform."""

    default_message = "Unsupported platform"
    default_code = ErrorCode.RES_PLATFORM_UNSUPPORTED

    def __init__(
        self,
        message: str | None = None,
        *,
        platform_key: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if platform_key:
            details["platform"] = platform_key
        super().__init__(message, code=code, details=details, cause=cause)
