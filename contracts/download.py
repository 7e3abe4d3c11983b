"""Artifact download interfaces.

The downloader in models.downloader implements against these contracts;
the bridge only depends on the Protocol.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one downloadable model artifact.

    Attributes:
        id: Unique identifier (e.g., "qwen:1.5b").
        name: Human-readable model name.
        filename: Canonical filename inside the model directory.
        url: Source URL (may redirect).
        expected_size: Exact artifact size in bytes.
        sha256: Lowercase hex SHA-256 digest of the artifact.
        ram_required_gb: Minimum total system RAM in GB.
        context_size: Native context window of the model.
        format: Artifact format tag (e.g., "GGUF").
        size_gb: Approximate size for display.
        revision: Upstream revision the URL is pinned to.
        description: User-facing description.
    """

    id: str
    name: str
    filename: str
    url: str
    expected_size: int
    sha256: str
    ram_required_gb: int = 0
    context_size: int = 4096
    format: str = "GGUF"
    size_gb: float = 0.0
    revision: str | None = None
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class DownloadPhase(Enum):
    """Phase of a download attempt."""

    PROBING = "probing"
    TRANSFERRING = "transferring"
    VALIDATING = "validating"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class DownloadProgress:
    """Snapshot reported to progress observers on every chunk.

    Attributes:
        downloaded: Bytes present in the partial file so far.
        total: Total expected bytes (0 if unknown).
        percent: downloaded / total * 100, clamped to 100.
        speed: Smoothed transfer speed in bytes per second.
        phase: Current phase of the attempt.
    """

    downloaded: int
    total: int
    percent: float
    speed: float
    phase: DownloadPhase

    def to_dict(self) -> dict[str, Any]:
        return {
            "downloaded": self.downloaded,
            "total": self.total,
            "percent": self.percent,
            "speed": self.speed,
            "phase": self.phase.value,
        }


@dataclass
class DownloadState:
    """Mutable per-attempt state, owned by the in-flight download."""

    model_id: str
    target_path: Path
    partial_path: Path
    downloaded: int = 0
    total: int = 0
    phase: DownloadPhase = DownloadPhase.PROBING
    last_error: str | None = None
    speed: float = 0.0

    def snapshot(self) -> DownloadProgress:
        percent = min(self.downloaded / self.total * 100, 100.0) if self.total > 0 else 0.0
        return DownloadProgress(
            downloaded=self.downloaded,
            total=self.total,
            percent=percent,
            speed=self.speed,
            phase=self.phase,
        )


@dataclass
class ValidationResult:
    """Outcome of validating a file against a descriptor.

    Attributes:
        valid: True when size, header and digest all match.
        reason: "size", "header", "hash" or "error" when invalid.
        size: Size of the file on disk.
        error: Error message when reason is "error".
    """

    valid: bool
    reason: str | None = None
    size: int = 0
    error: str | None = None


@dataclass
class DownloadResult:
    """Result-shaped outcome of a download, for callers that avoid exceptions."""

    success: bool
    path: Path | None = None
    size: int = 0
    message: str = ""
    error: str | None = None
    error_type: str | None = None
    code: str | None = None
    resumable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.success:
            result.update({"path": str(self.path), "size": self.size, "message": self.message})
        else:
            result.update(
                {
                    "error": self.error,
                    "error_type": self.error_type,
                    "code": self.code,
                    "resumable": self.resumable,
                }
            )
        return result


ProgressCallback = Callable[[DownloadProgress], None]


class ArtifactProvider(Protocol):
    """Interface for acquiring a verified artifact on local disk."""

    model_dir: Path

    def acquire(
        self, descriptor: ModelDescriptor, on_progress: ProgressCallback | None = None
    ) -> Path:
        """Return the canonical path of a verified artifact, downloading if needed.

        Raises:
            DownloadError, NetworkError: Typed failure of the attempt.
        """
        ...

    def model_path(self, filename: str) -> Path:
        """Return the canonical path for an artifact filename."""
        ...

    def validate(
        self, path: Path, descriptor: ModelDescriptor, expected_size: int | None = None
    ) -> ValidationResult:
        """Validate an existing file against a descriptor."""
        ...

    def delete(self, filename: str) -> bool:
        """Remove the canonical artifact and its partial."""
        ...

    def list_downloaded(self) -> list[dict[str, Any]]:
        """Describe the artifacts present on disk."""
        ...
