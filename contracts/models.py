"""Model loading and generation interfaces.

models.loader implements against these contracts.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol


@dataclass
class LoadOptions:
    """Options for loading a model into the runtime.

    Attributes:
        gpu: Offload all layers to the GPU (gpu_layers=-1) or none (0).
        context_size: Decode context window in tokens.
        batch_size: Prompt processing batch size.
        threads: CPU threads used by the runtime.
    """

    gpu: bool = True
    context_size: int = 4096
    batch_size: int = 512
    threads: int = 4

    @property
    def gpu_layers(self) -> int:
        return -1 if self.gpu else 0

    def __post_init__(self) -> None:
        """Validate field constraints."""
        if self.context_size < 1:
            msg = f"context_size must be >= 1, got {self.context_size}"
            raise ValueError(msg)
        if self.batch_size < 1:
            msg = f"batch_size must be >= 1, got {self.batch_size}"
            raise ValueError(msg)
        if self.threads < 1:
            msg = f"threads must be >= 1, got {self.threads}"
            raise ValueError(msg)


@dataclass
class GenerationRequest:
    """Per-call generation options.

    Unset sampling fields fall back to engine defaults; temperature falls
    back to the configured per-mode setting.

    Attributes:
        mode: Generation mode (selects the system prompt). None keeps the current mode.
        temperature: Explicit temperature override.
        max_tokens: Maximum tokens to generate.
        top_p: Nucleus sampling threshold.
        top_k: Limit vocabulary to top-k tokens.
        repeat_penalty: Repetition penalty (1.0 = no penalty).
        seed: Sampling seed for reproducible output.
        json_schema: JSON Schema the output must conform to.
        cancel_token: Event that cancels a streaming generation when set.
    """

    mode: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    repeat_penalty: float | None = None
    seed: int | None = None
    json_schema: dict[str, Any] | None = None
    cancel_token: threading.Event | None = None

    def __post_init__(self) -> None:
        """Validate field constraints."""
        if self.max_tokens is not None and self.max_tokens < 1:
            msg = f"max_tokens must be >= 1, got {self.max_tokens}"
            raise ValueError(msg)
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            msg = f"temperature must be 0.0-2.0, got {self.temperature}"
            raise ValueError(msg)
        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            msg = f"top_p must be 0.0-1.0, got {self.top_p}"
            raise ValueError(msg)
        if self.top_k is not None and self.top_k < 1:
            msg = f"top_k must be >= 1, got {self.top_k}"
            raise ValueError(msg)


ChunkCallback = Callable[[str], None]


class Generator(Protocol):
    """Interface for the inference engine used by the bridge."""

    def load_model(
        self, model_path: str | Path, options: LoadOptions | None = None
    ) -> dict[str, Any]:
        """Load a model file. Returns ``{"success": bool, ...}``."""
        ...

    def generate(self, prompt: str, options: GenerationRequest | None = None) -> dict[str, Any]:
        """Run one full decode. Returns ``{"success", "text"[, "parsed"]}``."""
        ...

    def generate_stream(
        self,
        prompt: str,
        options: GenerationRequest | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> dict[str, Any]:
        """Decode while emitting chunks. Cancellation returns the partial text."""
        ...

    def abort_generation(self) -> bool:
        """Signal the active generation to stop. Returns False if none is active."""
        ...

    def is_model_loaded(self) -> bool:
        """Check if a model is loaded."""
        ...

    def unload(self) -> None:
        """Dispose session, decode context and model handle, in that order."""
        ...
