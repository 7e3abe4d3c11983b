"""Model Registry for delve.

Provides the descriptors of downloadable GGUF artifacts and the system
checks used before downloading or loading one of them.

Usage:
    from models.registry import get_model_spec, validate_model_requirements

    spec = get_model_spec("qwen:1.5b")
    check = validate_model_requirements(spec)
    if not check.valid:
        print(check.reason)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

import psutil

from contracts.download import ModelDescriptor

logger = logging.getLogger(__name__)

BYTES_PER_GB = 1024 * 1024 * 1024

_QWEN_REVISION = "91cad51170dc346986eccefdc2dd33a9da36ead9"

# Registry of supported models
MODEL_REGISTRY: dict[str, ModelDescriptor] = {
    "qwen:1.5b": ModelDescriptor(
        id="qwen:1.5b",
        name="Qwen2.5-1.5B-Instruct",
        filename="qwen2.5-1.5b-instruct-q4_k_m.gguf",
        url=(
            "https://huggingface.co/Qwen/Qwen2.5-1.5B-Instruct-GGUF/resolve/"
            f"{_QWEN_REVISION}/qwen2.5-1.5b-instruct-q4_k_m.gguf?download=true"
        ),
        expected_size=1117320736,
        sha256="6a1a2eb6d15622bf3c96857206351ba97e1af16c30d7a74ee38970e434e9407e",
        ram_required_gb=3,
        context_size=8192,
        format="GGUF",
        size_gb=1.04,
        revision=_QWEN_REVISION,
        description="Optimized 1.5B model with excellent performance/size ratio",
    ),
}

DEFAULT_MODEL_ID = "qwen:1.5b"


def get_model_spec(model_id: str) -> ModelDescriptor | None:
    """Get a model descriptor by its ID.

    Args:
        model_id: The model identifier (e.g., "qwen:1.5b").

    Returns:
        The ModelDescriptor if found, None otherwise.
    """
    return MODEL_REGISTRY.get(model_id)


def get_model_spec_by_filename(filename: str) -> ModelDescriptor | None:
    """Find the descriptor whose canonical filename matches."""
    for spec in MODEL_REGISTRY.values():
        if spec.filename == filename:
            return spec
    return None


def get_all_models() -> list[ModelDescriptor]:
    """Return all registered descriptors, largest first."""
    return sorted(MODEL_REGISTRY.values(), key=lambda m: m.expected_size, reverse=True)


@dataclass
class MemoryInfo:
    """System memory snapshot in whole gigabytes."""

    total_gb: int
    free_gb: int
    platform: str


def get_memory_info() -> MemoryInfo:
    """Detect total and available RAM."""
    mem = psutil.virtual_memory()
    info = MemoryInfo(
        total_gb=round(mem.total / BYTES_PER_GB),
        free_gb=round(mem.available / BYTES_PER_GB),
        platform=sys.platform,
    )
    logger.debug("Memory detected: %dGB total, %dGB free", info.total_gb, info.free_gb)
    return info


def recommended_context_size(total_ram_gb: float) -> int:
    """Context window that comfortably fits the machine's total RAM."""
    if total_ram_gb < 8:
        return 2048
    if total_ram_gb < 16:
        return 4096
    return 8192


@dataclass
class RequirementCheck:
    """Outcome of checking a model against the system."""

    valid: bool
    reason: str | None = None


def validate_model_requirements(
    spec: ModelDescriptor, total_ram_gb: int | None = None
) -> RequirementCheck:
    """Check that the machine has enough RAM for a model.

    Args:
        spec: Model descriptor to check.
        total_ram_gb: Total RAM in GB. Detected with psutil when omitted.

    Returns:
        RequirementCheck with a human-readable reason when invalid.
    """
    available = total_ram_gb if total_ram_gb is not None else get_memory_info().total_gb

    if spec.ram_required_gb and available < spec.ram_required_gb:
        return RequirementCheck(
            valid=False,
            reason=(
                f"Insufficient RAM. Required: {spec.ram_required_gb}GB, "
                f"Available: {available}GB"
            ),
        )

    return RequirementCheck(valid=True)


def supports_gpu() -> bool:
    """Whether the runtime can offload layers on this platform."""
    return sys.platform in ("darwin", "linux", "win32")
