"""Contract interfaces for delve.

Shared dataclasses and Protocol interfaces. The bridge codes against these
contracts, not the concrete downloader and engine.
"""

from contracts.download import (
    ArtifactProvider,
    DownloadPhase,
    DownloadProgress,
    DownloadResult,
    DownloadState,
    ModelDescriptor,
    ProgressCallback,
    ValidationResult,
)
from contracts.models import (
    ChunkCallback,
    GenerationRequest,
    Generator,
    LoadOptions,
)

__all__ = [
    # Download contracts
    "ArtifactProvider",
    "DownloadPhase",
    "DownloadProgress",
    "DownloadResult",
    "DownloadState",
    "ModelDescriptor",
    "ProgressCallback",
    "ValidationResult",
    # Model contracts
    "ChunkCallback",
    "GenerationRequest",
    "Generator",
    "LoadOptions",
]
