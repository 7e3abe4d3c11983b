"""Convenience factory functions for common error scenarios.

Provides shorthand functions for creating commonly-used error instances
with appropriate error codes and details pre-filled.
"""

from __future__ import annotations

from typing import Any

from delve.errors.base import ErrorCode
from delve.errors.download import IncompleteDownloadError, NetworkError
from delve.errors.model import ModelLoadError


def model_not_found(model_path: str) -> ModelLoadError:
    """Create a ModelLoadError for a missing model."""
    return ModelLoadError(
        f"Model file not found: {model_path}",
        model_path=model_path,
        code=ErrorCode.MDL_NOT_FOUND,
    )


def model_out_of_memory(
    model_name: str,
    available_mb: int | None = None,
    required_mb: int | None = None,
) -> ModelLoadError:
    """Create a ModelLoadError for insufficient memory."""
    details: dict[str, Any] = {}
    if available_mb is not None:
        details["available_mb"] = available_mb
    if required_mb is not None:
        details["required_mb"] = required_mb

    return ModelLoadError(
        f"Insufficient memory to load model: {model_name}",
        model_name=model_name,
        code=ErrorCode.RES_MEMORY_EXHAUSTED,
        details=details,
    )


def download_incomplete(
    actual_size: int,
    expected_size: int,
    model_id: str | None = None,
    path: str | None = None,
) -> IncompleteDownloadError:
    """Create an IncompleteDownloadError with byte counts in the message."""
    return IncompleteDownloadError(
        f"Download incomplete ({actual_size}/{expected_size} bytes)",
        actual_size=actual_size,
        expected_size=expected_size,
        model_id=model_id,
        path=path,
    )


def http_status_error(url: str, status_code: int) -> NetworkError:
    """Create a NetworkError for an unexpected HTTP status."""
    return NetworkError(
        f"Download failed with status {status_code}",
        url=url,
        status_code=status_code,
    )
