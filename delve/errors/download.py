"""Network and artifact download error classes.

The download taxonomy separates failures the caller can resume later
(IncompleteDownloadError) from corrupt transfers that must restart from
zero (HashMismatchError, HeaderInvalidError) and from transport failures
(NetworkError).
"""

from __future__ import annotations

from typing import Any

from delve.errors.base import DelveError, ErrorCode


class NetworkError(DelveError):
    """Raised when the remote host cannot be reached or answers with an error.

    Network errors are transient and may be retried with backoff.
    """

    default_message = "Network error"
    default_code = ErrorCode.NET_UNREACHABLE
    retryable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        url: str | None = None,
        status_code: int | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if url:
            details["url"] = url
        if status_code is not None:
            details["status_code"] = status_code
            code = code or ErrorCode.NET_HTTP_STATUS
            # Client errors will not change on a second attempt
            if 400 <= status_code < 500:
                self.retryable = False
        self.status_code = status_code
        super().__init__(message, code=code, details=details, cause=cause)


class RedirectLoopError(NetworkError):
    """Raised when a URL redirects more times than allowed."""

    default_message = "Too many redirects"
    default_code = ErrorCode.NET_REDIRECT_LOOP
    retryable = False


class DownloadError(DelveError):
    """Base class for failures detected while transferring or validating an artifact."""

    default_message = "Download failed"
    default_code = ErrorCode.DL_SIZE_MISMATCH
    retryable = False

    def __init__(
        self,
        message: str | None = None,
        *,
        model_id: str | None = None,
        path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if model_id:
            details["model_id"] = model_id
        if path:
            details["path"] = path
        super().__init__(message, code=code, details=details, cause=cause)


class RangeMismatchError(DownloadError):
    """Raised when the server ignored or misreported a requested byte range."""

    default_message = "Server returned an unexpected byte range"
    default_code = ErrorCode.DL_RANGE_MISMATCH


class SizeMismatchError(DownloadError):
    """Raised when the transferred file size does not match the expected size."""

    default_message = "Downloaded file has the wrong size"
    default_code = ErrorCode.DL_SIZE_MISMATCH

    def __init__(
        self,
        message: str | None = None,
        *,
        actual_size: int | None = None,
        expected_size: int | None = None,
        model_id: str | None = None,
        path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if actual_size is not None:
            details["actual_size"] = actual_size
        if expected_size is not None:
            details["expected_size"] = expected_size
        self.actual_size = actual_size
        self.expected_size = expected_size
        super().__init__(
            message, model_id=model_id, path=path, code=code, details=details, cause=cause
        )


class IncompleteDownloadError(SizeMismatchError):
    """Raised when a transfer ended short of the expected size.

    The partial file is kept so a later attempt can resume it.
    """

    default_message = "Download incomplete"
    default_code = ErrorCode.DL_INCOMPLETE
    retryable = True


class HeaderInvalidError(DownloadError):
    """Raised when the artifact does not start with the expected magic header."""

    default_message = "Downloaded file has an invalid header"
    default_code = ErrorCode.DL_HEADER_INVALID

    def __init__(
        self,
        message: str | None = None,
        *,
        header_hex: str | None = None,
        model_id: str | None = None,
        path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if header_hex is not None:
            details["header_hex"] = header_hex
        super().__init__(
            message, model_id=model_id, path=path, code=code, details=details, cause=cause
        )


class HashMismatchError(DownloadError):
    """Raised when a full-size file does not match the expected SHA-256 digest."""

    default_message = "Downloaded file checksum mismatch"
    default_code = ErrorCode.DL_HASH_MISMATCH

    def __init__(
        self,
        message: str | None = None,
        *,
        expected: str | None = None,
        actual: str | None = None,
        model_id: str | None = None,
        path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if expected:
            details["expected_sha256"] = expected
        if actual:
            details["actual_sha256"] = actual
        super().__init__(
            message, model_id=model_id, path=path, code=code, details=details, cause=cause
        )
