"""Model and inference engine error classes."""

from __future__ import annotations

from typing import Any

from delve.errors.base import DelveError, ErrorCode

# Model Errors


class ModelError(DelveError):
    """Base class for model-related errors."""

    default_message = "Model error"
    default_code = ErrorCode.MDL_GENERATION_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        model_name: str | None = None,
        model_path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if model_name:
            details["model_name"] = model_name
        if model_path:
            details["model_path"] = model_path
        super().__init__(message, code=code, details=details, cause=cause)


class ModelLoadError(ModelError):
    """Raised when model loading fails."""

    default_message = "Failed to load model"
    default_code = ErrorCode.MDL_LOAD_FAILED


class UnknownModelError(ModelError):
    """Raised when a model id is not present in the registry."""

    default_message = "Unknown model"
    default_code = ErrorCode.MDL_UNKNOWN


class NoModelLoadedError(ModelError):
    """Raised when an operation needs a loaded model and none is loaded."""

    default_message = "No model loaded"
    default_code = ErrorCode.MDL_NOT_LOADED


class UnknownModeError(ModelError):
    """Raised when a generation mode has no configured profile."""

    default_message = "Unknown mode"
    default_code = ErrorCode.MDL_UNKNOWN_MODE

    def __init__(
        self,
        message: str | None = None,
        *,
        mode: str | None = None,
        available: list[str] | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if mode is not None:
            details["mode"] = mode
        if available is not None:
            details["available_modes"] = available
        super().__init__(message, code=code, details=details, cause=cause)


class ModelGenerationError(ModelError):
    """Raised when text generation fails."""

    default_message = "Text generation failed"
    default_code = ErrorCode.MDL_GENERATION_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        prompt: str | None = None,
        model_name: str | None = None,
        model_path: str | None = None,
        code: ErrorCode | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        details = details or {}
        if prompt is not None:
            # Truncate long prompts in error details
            details["prompt_preview"] = prompt[:200] + "..." if len(prompt) > 200 else prompt
        super().__init__(
            message,
            model_name=model_name,
            model_path=model_path,
            code=code,
            details=details,
            cause=cause,
        )


class GenerationBusyError(ModelGenerationError):
    """Raised when a generation is requested while another one is running."""

    default_message = "A generation is already in progress"
    default_code = ErrorCode.MDL_BUSY
