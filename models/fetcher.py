"""Runtime binary fetcher for the supervised inference server.

Downloads the platform's server binary into the binary directory, marks it
executable and moves it into place atomically. Transient failures are
retried with exponential backoff.
"""

from __future__ import annotations

import logging
import os
import platform
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import requests

from delve.config import FetcherSettings
from delve.errors import NetworkError, UnsupportedPlatformError, http_status_error
from delve.observability.logging import timed_operation
from delve.reliability.http import create_session, to_network_error
from delve.reliability.retry import retry_with_backoff

logger = logging.getLogger(__name__)

RELEASE_BASE_URL = "https://github.com/ollama/ollama/releases/download"

# Release asset per "<sys.platform>-<arch>"
_PLATFORM_ASSETS = {
    "darwin-arm64": "ollama-darwin-arm64",
    "darwin-x64": "ollama-darwin-amd64",
    "win32-x64": "ollama-windows-amd64.exe",
    "linux-x64": "ollama-linux-amd64",
}

_ARCH_ALIASES = {
    "arm64": "arm64",
    "aarch64": "arm64",
    "x86_64": "x64",
    "amd64": "x64",
}

BinaryProgressCallback = Callable[[dict[str, Any]], None]


def platform_key(system: str | None = None, machine: str | None = None) -> str:
    """Return ``<platform>-<arch>`` in the release naming scheme (e.g. ``darwin-arm64``)."""
    system = system or sys.platform
    machine = (machine or platform.machine()).lower()
    if system.startswith("linux"):
        system = "linux"
    return f"{system}-{_ARCH_ALIASES.get(machine, machine)}"


def binary_name(system: str | None = None) -> str:
    """Local filename of the server binary."""
    system = system or sys.platform
    if system == "darwin":
        return "ollama-darwin"
    if system == "win32":
        return "ollama.exe"
    return "ollama-linux"


@dataclass
class BinaryVerification:
    """Result of checking a downloaded binary."""

    valid: bool
    reason: str | None = None
    size: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "reason": self.reason, "size": self.size}


class BinaryFetcher:
    """Fetches the inference server binary for the current platform."""

    def __init__(
        self,
        binary_dir: Path,
        settings: FetcherSettings | None = None,
        session: requests.Session | None = None,
        on_progress: BinaryProgressCallback | None = None,
        system: str | None = None,
        machine: str | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.binary_dir = Path(binary_dir)
        self._settings = settings or FetcherSettings()
        self._session = session or create_session()
        self._on_progress = on_progress
        self._system = system or sys.platform
        self._key = platform_key(self._system, machine)
        self._sleep = sleep

    @property
    def binary_path(self) -> Path:
        return self.binary_dir / binary_name(self._system)

    def binary_url(self) -> str:
        """Release URL for this platform.

        Raises:
            UnsupportedPlatformError: No release asset exists for this platform.
        """
        asset = _PLATFORM_ASSETS.get(self._key)
        if asset is None:
            raise UnsupportedPlatformError(
                f"Unsupported platform: {self._key}", platform_key=self._key
            )
        return f"{RELEASE_BASE_URL}/{self._settings.version}/{asset}"

    def fetch(self, force: bool = False) -> Path:
        """Return the binary path, downloading the binary if needed.

        Args:
            force: Download even if a binary already exists.

        Raises:
            UnsupportedPlatformError: No binary for this platform.
            NetworkError: All download attempts failed.
        """
        url = self.binary_url()
        path = self.binary_path

        if path.exists() and not force:
            logger.debug("Binary already exists: %s", path)
            return path

        self.binary_dir.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(path.name + ".download")

        download = retry_with_backoff(
            max_retries=self._settings.max_retries,
            exceptions=(NetworkError,),
            sleep=self._sleep,
        )(self._download_file)

        with timed_operation(logger, "binary.fetch", url=url) as ctx:
            download(url, temp_path)
            os.chmod(temp_path, 0o755)
            os.replace(temp_path, path)
            ctx["size"] = path.stat().st_size

        logger.info("Binary downloaded to %s", path)
        return path

    def verify(self, path: Path | None = None) -> BinaryVerification:
        """Check that the binary exists and is plausibly complete."""
        path = path or self.binary_path
        if not path.exists():
            return BinaryVerification(valid=False, reason="Binary not found")

        size = path.stat().st_size
        if size < self._settings.min_binary_bytes:
            return BinaryVerification(valid=False, reason="Binary too small (<1MB)", size=size)

        return BinaryVerification(valid=True, size=size)

    def _download_file(self, url: str, destination: Path) -> None:
        start = time.monotonic()
        try:
            response = self._session.get(url, stream=True, timeout=self._settings.timeout)
        except requests.RequestException as e:
            raise to_network_error(e, url) from e

        with response:
            if response.status_code != 200:
                destination.unlink(missing_ok=True)
                raise http_status_error(url, response.status_code)

            length = response.headers.get("Content-Length", "")
            total = int(length) if length.isdigit() else 0
            downloaded = 0
            try:
                with destination.open("wb") as f:
                    for chunk in response.iter_content(chunk_size=64 * 1024):
                        if not chunk:
                            continue
                        f.write(chunk)
                        downloaded += len(chunk)
                        self._report(downloaded, total, start)
            except requests.RequestException as e:
                destination.unlink(missing_ok=True)
                raise to_network_error(e, url) from e

    def _report(self, downloaded: int, total: int, start: float) -> None:
        if self._on_progress is None:
            return
        elapsed = max(time.monotonic() - start, 1e-6)
        self._on_progress(
            {
                "type": "binary",
                "downloaded": downloaded,
                "total": total,
                "percent": round(downloaded / total * 100) if total else 0,
                "speed": downloaded / elapsed,
                "elapsed": elapsed,
            }
        )
