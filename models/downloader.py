"""Resumable, verified GGUF artifact downloader.

Streams a model artifact into ``<filename>.partial`` next to its canonical
path, resuming with HTTP Range requests, and promotes it with ``os.replace``
only after size, magic header and SHA-256 all match the descriptor.

Concurrent requests for the same model id share one transfer through
``InFlightRegistry``.

Usage:
    from models.downloader import ArtifactDownloader
    from models.registry import get_model_spec

    downloader = ArtifactDownloader(get_model_dir())
    path = downloader.acquire(get_model_spec("qwen:1.5b"), on_progress=print)
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import urljoin

import requests

from contracts.download import (
    DownloadPhase,
    DownloadProgress,
    DownloadResult,
    DownloadState,
    ModelDescriptor,
    ProgressCallback,
    ValidationResult,
)
from delve.config import DownloadSettings
from delve.errors import (
    DelveError,
    ErrorCode,
    HashMismatchError,
    HeaderInvalidError,
    IncompleteDownloadError,
    NetworkError,
    RangeMismatchError,
    RedirectLoopError,
    ResourceError,
    SizeMismatchError,
    download_incomplete,
    http_status_error,
)
from delve.observability.logging import log_event, timed_operation
from delve.reliability.http import REDIRECT_STATUSES, create_session, to_network_error
from delve.reliability.inflight import InFlightRegistry
from delve.reliability.retry import retry_with_backoff

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
PARTIAL_SUFFIX = ".partial"
HASH_BLOCK_SIZE = 64 * 1024
SPEED_SMOOTHING = 0.3

_CONTENT_RANGE_RE = re.compile(r"^\s*bytes\s+(\d+)-(\d+)/(\d+|\*)\s*$", re.IGNORECASE)


def parse_content_range(value: str | None) -> tuple[int, int, int | None] | None:
    """Parse ``Content-Range: bytes a-b/total``.

    Returns:
        (start, end, total) with total None for ``*``, or None if unparseable.
    """
    if not value:
        return None
    match = _CONTENT_RANGE_RE.match(value)
    if not match:
        return None
    start, end = int(match.group(1)), int(match.group(2))
    if end < start:
        return None
    total = None if match.group(3) == "*" else int(match.group(3))
    return start, end, total


def read_header(path: Path, n: int = len(GGUF_MAGIC)) -> bytes:
    """Read the first ``n`` bytes of a file."""
    with path.open("rb") as f:
        return f.read(n)


def compute_sha256(path: Path) -> str:
    """Compute the lowercase hex SHA-256 of a file, streaming in 64 KiB blocks."""
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
            digest.update(block)
    return digest.hexdigest()


def validate_artifact(
    path: Path, descriptor: ModelDescriptor, expected_size: int | None = None
) -> ValidationResult:
    """Check a file's size, magic header and digest against a descriptor."""
    try:
        size = path.stat().st_size
        expected = expected_size if expected_size is not None else descriptor.expected_size
        if expected and size != expected:
            return ValidationResult(valid=False, reason="size", size=size)
        if read_header(path) != GGUF_MAGIC:
            return ValidationResult(valid=False, reason="header", size=size)
        if descriptor.sha256 and compute_sha256(path) != descriptor.sha256.lower():
            return ValidationResult(valid=False, reason="hash", size=size)
        return ValidationResult(valid=True, size=size)
    except OSError as e:
        return ValidationResult(valid=False, reason="error", error=str(e))


class SpeedMeter:
    """Exponential moving average of transfer speed in bytes per second."""

    def __init__(
        self, alpha: float = SPEED_SMOOTHING, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.alpha = alpha
        self.speed = 0.0
        self._clock = clock
        self._last = clock()
        self._unmeasured = 0

    def update(self, nbytes: int) -> float:
        now = self._clock()
        self._unmeasured += nbytes
        elapsed = now - self._last
        if elapsed <= 0:
            return self.speed
        instant = self._unmeasured / elapsed
        if self.speed == 0.0:
            self.speed = instant
        else:
            self.speed = self.alpha * instant + (1 - self.alpha) * self.speed
        self._unmeasured = 0
        self._last = now
        return self.speed


class ArtifactDownloader:
    """Downloads and verifies model artifacts into a model directory.

    Thread-safe: attempts for different model ids run independently on their
    callers' threads; attempts for the same id are deduplicated.
    """

    def __init__(
        self,
        model_dir: Path,
        session: requests.Session | None = None,
        settings: DownloadSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the downloader.

        Args:
            model_dir: Directory holding canonical and partial artifacts.
            session: HTTP session. A fresh one from create_session() if omitted.
            settings: Timeouts, redirect and retry caps, chunk size.
            clock: Monotonic clock used for speed measurement.
            sleep: Wait between transfer attempts.
        """
        self.model_dir = Path(model_dir)
        self._settings = settings or DownloadSettings()
        self._session = session or create_session(self._settings.user_agent)
        self._clock = clock
        self._sleep = sleep
        self._inflight = InFlightRegistry()
        self._states: dict[str, DownloadState] = {}
        self._states_lock = threading.Lock()

    # -- paths -----------------------------------------------------------

    def model_path(self, filename: str) -> Path:
        return self.model_dir / filename

    def partial_path(self, filename: str) -> Path:
        return self.model_dir / f"{filename}{PARTIAL_SUFFIX}"

    # -- public API --------------------------------------------------------

    def acquire(
        self, descriptor: ModelDescriptor, on_progress: ProgressCallback | None = None
    ) -> Path:
        """Return the canonical path of a verified artifact, downloading if needed.

        Concurrent calls for the same descriptor id share one attempt; only the
        first caller's progress callback is invoked.

        Raises:
            NetworkError: Transport failure or unexpected HTTP status.
            DownloadError: Range, size, header or digest failure.
        """
        return self._inflight.run(descriptor.id, lambda: self._acquire(descriptor, on_progress))

    def download(
        self, descriptor: ModelDescriptor, on_progress: ProgressCallback | None = None
    ) -> DownloadResult:
        """Result-shaped wrapper around acquire()."""
        try:
            path = self.acquire(descriptor, on_progress)
        except DelveError as e:
            return DownloadResult(
                success=False,
                error=e.message,
                error_type=type(e).__name__,
                code=e.code.value,
                resumable=isinstance(e, IncompleteDownloadError),
                details=e.details,
            )
        return DownloadResult(
            success=True,
            path=path,
            size=path.stat().st_size,
            message="Model downloaded successfully",
        )

    def validate(
        self, path: Path, descriptor: ModelDescriptor, expected_size: int | None = None
    ) -> ValidationResult:
        return validate_artifact(path, descriptor, expected_size)

    def status(self, model_id: str) -> DownloadProgress | None:
        """Snapshot of the in-flight attempt for a model id, if any."""
        with self._states_lock:
            state = self._states.get(model_id)
            return state.snapshot() if state else None

    def is_downloading(self, model_id: str) -> bool:
        return self._inflight.is_pending(model_id)

    def delete(self, filename: str) -> bool:
        """Remove a canonical artifact and its partial. Returns True if anything was removed."""
        removed = False
        for path in (self.model_path(filename), self.partial_path(filename)):
            if path.exists():
                path.unlink()
                logger.info("Deleted %s", path)
                removed = True
        return removed

    def list_downloaded(self) -> list[dict[str, Any]]:
        """List canonical ``.gguf`` files with a valid header, largest first."""
        if not self.model_dir.is_dir():
            return []

        models: list[dict[str, Any]] = []
        for path in self.model_dir.glob("*.gguf"):
            try:
                if read_header(path) != GGUF_MAGIC:
                    logger.debug("Skipping %s: invalid header", path.name)
                    continue
                stat = path.stat()
            except OSError as e:
                logger.warning("Cannot inspect %s: %s", path, e)
                continue
            models.append(
                {
                    "filename": path.name,
                    "path": str(path),
                    "size": stat.st_size,
                    "modified": stat.st_mtime,
                }
            )
        models.sort(key=lambda m: m["size"], reverse=True)
        return models

    # -- HTTP probes -------------------------------------------------------

    def resolve_final_url(self, url: str) -> str:
        """Follow redirects manually, capped at the configured number of hops.

        Each hop is asked with HEAD. Hosts that refuse HEAD are asked again
        with a one-byte ranged GET whose body is never read.

        Raises:
            RedirectLoopError: When the cap is exceeded.
            NetworkError: On transport failure.
        """
        current = url
        hops = 0
        while True:
            response = self._redirect_hop(current)
            with response:
                location = response.headers.get("Location")
                if response.status_code not in REDIRECT_STATUSES or not location:
                    return current

            hops += 1
            if hops > self._settings.max_redirects:
                raise RedirectLoopError(
                    f"Too many redirects (>{self._settings.max_redirects}) for {url}",
                    url=url,
                )
            current = urljoin(current, location)
            logger.debug("Redirect %d -> %s", hops, current)

    def _redirect_hop(self, url: str) -> requests.Response:
        try:
            response = self._session.head(
                url, allow_redirects=False, timeout=self._settings.probe_timeout
            )
            if response.status_code < 400:
                return response
            response.close()
            logger.debug("HEAD %s answered %d, retrying hop with GET", url, response.status_code)
            return self._session.get(
                url,
                headers={"Range": "bytes=0-0"},
                stream=True,
                allow_redirects=False,
                timeout=self._settings.probe_timeout,
            )
        except requests.RequestException as e:
            raise to_network_error(e, url) from e

    def probe_size(self, url: str) -> int | None:
        """Ask the server for the total size with a one-byte range request.

        Returns:
            Total size in bytes, or None when neither Content-Range nor
            Content-Length can be parsed.
        """
        try:
            response = self._session.get(
                url,
                headers={"Range": "bytes=0-0"},
                stream=True,
                allow_redirects=False,
                timeout=self._settings.probe_timeout,
            )
        except requests.RequestException as e:
            raise to_network_error(e, url) from e

        with response:
            parsed = parse_content_range(response.headers.get("Content-Range"))
            if parsed is not None and parsed[2] is not None:
                return parsed[2]
            length = response.headers.get("Content-Length")
            if response.status_code == 200 and length and length.isdigit():
                return int(length)
        logger.debug("Could not determine remote size for %s", url)
        return None

    # -- attempt -----------------------------------------------------------

    def _acquire(self, descriptor: ModelDescriptor, on_progress: ProgressCallback | None) -> Path:
        target = self.model_path(descriptor.filename)
        state = DownloadState(
            model_id=descriptor.id,
            target_path=target,
            partial_path=self.partial_path(descriptor.filename),
            total=descriptor.expected_size,
        )
        with self._states_lock:
            self._states[descriptor.id] = state

        try:
            with timed_operation(logger, "download.acquire", model_id=descriptor.id) as ctx:
                if target.exists() and self._existing_is_valid(descriptor, state, on_progress):
                    ctx["cached"] = True
                    return target

                self.model_dir.mkdir(parents=True, exist_ok=True)
                attempt = retry_with_backoff(
                    max_retries=self._settings.max_retries,
                    exceptions=(NetworkError,),
                    retry_if=lambda e: getattr(e, "retryable", False),
                    on_retry=lambda n, e: log_event(
                        logger, "download.retry", model_id=descriptor.id, attempt=n, error=str(e)
                    ),
                    sleep=self._sleep,
                )(self._attempt)
                attempt(descriptor, state, on_progress)
                ctx["size"] = state.downloaded
                return target
        except DelveError as e:
            self._fail(state, e.message, on_progress)
            raise
        except OSError as e:
            self._fail(state, str(e), on_progress)
            raise ResourceError(
                f"Disk access failed: {e}", code=ErrorCode.RES_DISK_ACCESS, cause=e
            ) from e
        finally:
            with self._states_lock:
                self._states.pop(descriptor.id, None)

    def _existing_is_valid(
        self,
        descriptor: ModelDescriptor,
        state: DownloadState,
        on_progress: ProgressCallback | None,
    ) -> bool:
        target = state.target_path
        size = target.stat().st_size
        if descriptor.expected_size and size != descriptor.expected_size:
            logger.warning(
                "Existing %s has wrong size (%d != %d), re-downloading",
                target.name,
                size,
                descriptor.expected_size,
            )
            target.unlink()
            return False

        state.phase = DownloadPhase.VALIDATING
        state.downloaded = size
        self._emit(state, on_progress)

        result = self.validate(target, descriptor)
        if not result.valid:
            logger.warning(
                "Existing %s failed validation (%s), re-downloading", target.name, result.reason
            )
            target.unlink()
            return False

        state.phase = DownloadPhase.COMPLETE
        self._emit(state, on_progress)
        return True

    def _attempt(
        self,
        descriptor: ModelDescriptor,
        state: DownloadState,
        on_progress: ProgressCallback | None,
    ) -> None:
        """One transfer from the current partial offset followed by verification."""
        self._transfer(descriptor, state, on_progress)
        self._finalize(descriptor, state, on_progress)

    def _transfer(
        self,
        descriptor: ModelDescriptor,
        state: DownloadState,
        on_progress: ProgressCallback | None,
    ) -> None:
        url = self.resolve_final_url(descriptor.url)

        if state.total <= 0:
            state.phase = DownloadPhase.PROBING
            self._emit(state, on_progress)
            state.total = self.probe_size(url) or 0

        partial = state.partial_path
        offset = 0
        if partial.exists():
            if read_header(partial) != GGUF_MAGIC:
                logger.warning("Partial %s has an invalid header, restarting from zero", partial)
                partial.unlink()
            else:
                offset = partial.stat().st_size

        headers = {"Range": f"bytes={offset}-"} if offset else {}
        try:
            response = self._session.get(
                url,
                headers=headers,
                stream=True,
                allow_redirects=False,
                timeout=(self._settings.probe_timeout, self._settings.transfer_timeout),
            )
        except requests.RequestException as e:
            raise to_network_error(e, url) from e

        with response:
            status = response.status_code

            if status == 416:
                if not offset:
                    raise RangeMismatchError(
                        "Server rejected a range request with no partial file",
                        model_id=descriptor.id,
                    )
                remote = self.probe_size(url) or state.total
                state.downloaded = offset
                if remote and offset >= remote:
                    logger.info("Partial %s already complete, validating", partial.name)
                    return
                raise download_incomplete(offset, remote, descriptor.id, str(partial))

            if status == 206:
                content_range = response.headers.get("Content-Range")
                parsed = parse_content_range(content_range)
                if parsed is None or parsed[0] != offset:
                    raise RangeMismatchError(
                        f"Expected range starting at {offset}, got {content_range!r}",
                        model_id=descriptor.id,
                        details={"offset": offset, "content_range": content_range},
                    )
                if not state.total and parsed[2]:
                    state.total = parsed[2]
                log_event(logger, "download.resume", model_id=descriptor.id, offset=offset)
                mode = "ab"
            elif status == 200:
                if offset:
                    logger.info("Server ignored range request, restarting %s", descriptor.id)
                    offset = 0
                length = response.headers.get("Content-Length")
                if not state.total and length and length.isdigit():
                    state.total = int(length)
                mode = "wb"
            else:
                raise http_status_error(url, status)

            self._stream_body(response, url, mode, offset, descriptor, state, on_progress)

    def _stream_body(
        self,
        response: requests.Response,
        url: str,
        mode: str,
        offset: int,
        descriptor: ModelDescriptor,
        state: DownloadState,
        on_progress: ProgressCallback | None,
    ) -> None:
        partial = state.partial_path
        state.phase = DownloadPhase.TRANSFERRING
        state.downloaded = offset
        meter = SpeedMeter(clock=self._clock)

        # Fresh transfers buffer until the magic header can be checked
        pending: bytes | None = b"" if offset == 0 else None
        bad_header: bytes | None = None

        try:
            with partial.open(mode) as f:
                for chunk in response.iter_content(chunk_size=self._settings.chunk_size):
                    if not chunk:
                        continue
                    if pending is not None:
                        pending += chunk
                        if len(pending) < len(GGUF_MAGIC):
                            continue
                        if not pending.startswith(GGUF_MAGIC):
                            bad_header = pending[:16]
                            break
                        chunk, pending = pending, None

                    f.write(chunk)
                    state.downloaded += len(chunk)
                    state.speed = meter.update(len(chunk))
                    self._emit(state, on_progress)

                if pending:
                    if GGUF_MAGIC.startswith(pending):
                        f.write(pending)
                        state.downloaded += len(pending)
                    else:
                        bad_header = pending
        except requests.RequestException as e:
            logger.warning(
                "Transfer of %s interrupted at %d bytes: %s", descriptor.id, state.downloaded, e
            )
            raise to_network_error(e, url) from e

        if bad_header is not None:
            partial.unlink(missing_ok=True)
            logger.error(
                "Invalid header for %s: %s, partial removed", descriptor.id, bad_header.hex()
            )
            raise HeaderInvalidError(
                "Server did not return a GGUF file",
                header_hex=bad_header.hex(),
                model_id=descriptor.id,
                path=str(partial),
            )

    def _finalize(
        self,
        descriptor: ModelDescriptor,
        state: DownloadState,
        on_progress: ProgressCallback | None,
    ) -> None:
        partial = state.partial_path
        state.phase = DownloadPhase.VALIDATING
        self._emit(state, on_progress)

        expected = descriptor.expected_size or state.total
        size = partial.stat().st_size if partial.exists() else 0
        state.downloaded = size

        if expected and size < expected:
            raise download_incomplete(size, expected, descriptor.id, str(partial))

        if expected and size > expected:
            partial.unlink()
            raise SizeMismatchError(
                f"Downloaded file is larger than expected ({size}/{expected} bytes)",
                actual_size=size,
                expected_size=expected,
                model_id=descriptor.id,
                path=str(partial),
            )

        header = read_header(partial, 16)
        if not header.startswith(GGUF_MAGIC):
            logger.error(
                "Downloaded %s has invalid header: %s, partial kept", descriptor.id, header.hex()
            )
            raise HeaderInvalidError(
                header_hex=header.hex(), model_id=descriptor.id, path=str(partial)
            )

        digest = compute_sha256(partial)
        if descriptor.sha256 and digest != descriptor.sha256.lower():
            partial.unlink()
            raise HashMismatchError(
                expected=descriptor.sha256.lower(),
                actual=digest,
                model_id=descriptor.id,
                path=str(partial),
            )

        os.replace(partial, state.target_path)
        state.phase = DownloadPhase.COMPLETE
        self._emit(state, on_progress)
        log_event(logger, "download.complete", model_id=descriptor.id, size=size)

    def _fail(
        self, state: DownloadState, message: str, on_progress: ProgressCallback | None
    ) -> None:
        state.phase = DownloadPhase.FAILED
        state.last_error = message
        self._emit(state, on_progress)

    def _emit(self, state: DownloadState, on_progress: ProgressCallback | None) -> None:
        if on_progress is None:
            return
        try:
            on_progress(state.snapshot())
        except Exception:
            logger.exception("Progress callback failed for %s", state.model_id)
