"""Unified exception hierarchy for delve.

All delve-specific exceptions inherit from DelveError, enabling consistent
handling across the downloader, the supervisor, the engine and the bridge.

Exception Hierarchy:
    DelveError (base)
    +-- ConfigurationError - Configuration and settings issues
    +-- ResourceError - System resource issues
    |   +-- UnsupportedPlatformError - No runtime binary for this platform
    +-- NetworkError - Transport failures (retryable)
    |   +-- RedirectLoopError - Redirect cap exceeded
    +-- DownloadError - Transfer and validation failures
    |   +-- RangeMismatchError - Server ignored/misreported a byte range
    |   +-- SizeMismatchError - Wrong final size
    |   |   +-- IncompleteDownloadError - Short transfer, partial kept
    |   +-- HeaderInvalidError - Wrong magic header
    |   +-- HashMismatchError - Digest mismatch, partial deleted
    +-- ModelError - Model loading and generation failures
    |   +-- ModelLoadError
    |   +-- UnknownModelError
    |   +-- NoModelLoadedError
    |   +-- UnknownModeError
    |   +-- ModelGenerationError
    |       +-- GenerationBusyError
    +-- ServiceError - Supervised process failures
        +-- ServiceStartError
        |   +-- ProcessStartupTimeoutError
        +-- ServiceStopError
        +-- PortUnavailableError
        +-- BinaryInvalidError

Usage:
    from delve.errors import DownloadError, NetworkError

    try:
        path = downloader.acquire(descriptor)
    except DownloadError as e:
        logger.error("Download error: %s (code: %s)", e.message, e.code)
"""

# --- base ---
from delve.errors.base import (
    ConfigurationError,
    DelveError,
    ErrorCode,
    ResourceError,
    UnsupportedPlatformError,
)

# --- download errors ---
from delve.errors.download import (
    DownloadError,
    HashMismatchError,
    HeaderInvalidError,
    IncompleteDownloadError,
    NetworkError,
    RangeMismatchError,
    RedirectLoopError,
    SizeMismatchError,
)

# --- factories ---
from delve.errors.factories import (
    download_incomplete,
    http_status_error,
    model_not_found,
    model_out_of_memory,
)

# --- model errors ---
from delve.errors.model import (
    GenerationBusyError,
    ModelError,
    ModelGenerationError,
    ModelLoadError,
    NoModelLoadedError,
    UnknownModelError,
    UnknownModeError,
)

# --- process errors ---
from delve.errors.process import (
    BinaryInvalidError,
    PortUnavailableError,
    ProcessStartupTimeoutError,
    ServiceError,
    ServiceStartError,
    ServiceStopError,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Base exception
    "DelveError",
    "ConfigurationError",
    "ResourceError",
    "UnsupportedPlatformError",
    # Network and download errors
    "NetworkError",
    "RedirectLoopError",
    "DownloadError",
    "RangeMismatchError",
    "SizeMismatchError",
    "IncompleteDownloadError",
    "HeaderInvalidError",
    "HashMismatchError",
    # Model errors
    "ModelError",
    "ModelLoadError",
    "UnknownModelError",
    "NoModelLoadedError",
    "UnknownModeError",
    "ModelGenerationError",
    "GenerationBusyError",
    # Service errors
    "ServiceError",
    "ServiceStartError",
    "ServiceStopError",
    "ProcessStartupTimeoutError",
    "PortUnavailableError",
    "BinaryInvalidError",
    # Convenience functions
    "model_not_found",
    "model_out_of_memory",
    "download_incomplete",
    "http_status_error",
]
