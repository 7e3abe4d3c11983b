"""Orchestration of download, load and generation for the host application.

ModelBridge is the single entry point a UI process talks to. Every public
operation returns a ``{"success": bool, ...}`` dict; typed errors from the
downloader, engine and supervisor are converted here and never escape.

Usage:
    from delve.bridge import ChatOptions, ModelBridge

    bridge = ModelBridge()
    unsubscribe = bridge.subscribe(lambda event: print(event.to_dict()))
    result = bridge.chat(ChatOptions(prompt="A dusty crypt", mode="levelIntro"))
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from contracts.download import (
    ArtifactProvider,
    DownloadProgress,
    ModelDescriptor,
    ProgressCallback,
)
from contracts.models import ChunkCallback, GenerationRequest, Generator, LoadOptions
from delve.config import DelveConfig, get_config, get_model_dir, save_config
from delve.errors import (
    DelveError,
    ErrorCode,
    HashMismatchError,
    HeaderInvalidError,
    IncompleteDownloadError,
    NetworkError,
    ResourceError,
    SizeMismatchError,
    UnknownModelError,
)
from delve.events import DownloadEventType, Event, EventBus, EventCallback
from delve.reliability.inflight import InFlightRegistry
from delve.services.base import ProcessSupervisor
from models.downloader import ArtifactDownloader
from models.loader import InferenceEngine
from models.registry import (
    get_all_models,
    get_memory_info,
    get_model_spec,
    get_model_spec_by_filename,
    supports_gpu,
    validate_model_requirements,
)

logger = logging.getLogger(__name__)

TEST_PROMPT = "Hello! Say one word."
INCOMPLETE_MESSAGE = "Download incomplete. Please wait or try again later."


class FailureCategory(StrEnum):
    """How the UI should react to a failed download."""

    INCOMPLETE = "incomplete"
    CORRUPT = "corrupt"
    NETWORK = "network"
    FATAL = "fatal"


FAILURE_HINTS = {
    FailureCategory.INCOMPLETE: "Download paused. Progress is saved and resumes next time.",
    FailureCategory.CORRUPT: "Downloaded file is corrupt. The download will start over.",
    FailureCategory.NETWORK: "Cannot reach the download server. Check your connection.",
    FailureCategory.FATAL: "Model download failed.",
}


def classify_failure(exc: BaseException) -> FailureCategory:
    """Map an error to resume-later, start-over, connectivity or fatal."""
    if isinstance(exc, IncompleteDownloadError):
        return FailureCategory.INCOMPLETE
    if isinstance(exc, (HashMismatchError, HeaderInvalidError, SizeMismatchError)):
        return FailureCategory.CORRUPT
    if isinstance(exc, NetworkError):
        return FailureCategory.NETWORK
    return FailureCategory.FATAL


@dataclass
class ChatOptions:
    """One chat request from the host application.

    Attributes:
        prompt: User prompt.
        model: Model id. None uses the configured default.
        mode: Generation mode (system prompt profile).
        temperature: Temperature override.
        max_tokens: Maximum tokens to generate.
        json_schema: JSON Schema the output must conform to.
        cancel_token: Event that cancels a streaming chat when set.
    """

    prompt: str
    model: str | None = None
    mode: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    json_schema: dict[str, Any] | None = None
    cancel_token: threading.Event | None = None

    def to_request(self) -> GenerationRequest:
        return GenerationRequest(
            mode=self.mode,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_schema=self.json_schema,
            cancel_token=self.cancel_token,
        )


def failure_result(exc: Exception) -> dict[str, Any]:
    """Convert an exception into the uniform failure dict."""
    if isinstance(exc, DelveError):
        category = classify_failure(exc)
        return {
            "success": False,
            "error": exc.message,
            "error_type": type(exc).__name__,
            "code": exc.code.value,
            "category": category.value,
            "resumable": category is FailureCategory.INCOMPLETE,
        }
    return {
        "success": False,
        "error": str(exc),
        "error_type": type(exc).__name__,
        "code": ErrorCode.UNKNOWN.value,
        "category": FailureCategory.FATAL.value,
        "resumable": False,
    }


class ModelBridge:
    """Coordinates the downloader, the inference engine and the optional server.

    Thread-safe: concurrent ensure_model() calls share one attempt.
    """

    def __init__(
        self,
        config: DelveConfig | None = None,
        downloader: ArtifactProvider | None = None,
        engine: Generator | None = None,
        supervisor: ProcessSupervisor | None = None,
        events: EventBus | None = None,
        config_path: Path | None = None,
        total_ram_gb: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the bridge.

        Args:
            config: Configuration. Uses the shared config if not provided.
            downloader: Artifact downloader. Built from config if not provided.
            engine: Inference engine. Built from config if not provided.
            supervisor: Optional inference server supervisor.
            events: Event bus for download notifications.
            config_path: Where model choices are persisted. Defaults to the
                standard config path when the shared config is used, and to
                no persistence when an explicit config is passed.
            total_ram_gb: Total RAM probe for requirement checks.
        """
        self._config_path = config_path
        self._persist_choices = config_path is not None or config is None
        self._config = config or get_config()
        self._downloader: ArtifactProvider = downloader or ArtifactDownloader(
            get_model_dir(self._config), settings=self._config.download
        )
        self._engine: Generator = engine or InferenceEngine(self._config)
        self._supervisor = supervisor
        self.events = events or EventBus()
        self._total_ram_gb = total_ram_gb
        self.current_model: str | None = None
        self._validated: tuple[Path, int, int] | None = None
        self._ensure = InFlightRegistry()

    @property
    def engine(self) -> Generator:
        return self._engine

    @property
    def downloader(self) -> ArtifactProvider:
        return self._downloader

    def subscribe(
        self,
        callback: EventCallback,
        event_types: Iterable[DownloadEventType] | None = None,
    ) -> Callable[[], None]:
        """Register for download events. Returns an unsubscribe function."""
        return self.events.subscribe(callback, event_types)

    # -- helpers -----------------------------------------------------------

    def _descriptor(self, model_id: str | None = None) -> ModelDescriptor:
        model_id = model_id or self._config.llm.model_id
        spec = get_model_spec(model_id)
        if spec is None:
            raise UnknownModelError(f"Unknown model: {model_id}", model_name=model_id)
        return spec

    def _check_requirements(self, descriptor: ModelDescriptor) -> None:
        total = self._total_ram_gb() if self._total_ram_gb else None
        check = validate_model_requirements(descriptor, total_ram_gb=total)
        if not check.valid:
            raise ResourceError(
                check.reason,
                code=ErrorCode.RES_MEMORY_LOW,
                details={"model_id": descriptor.id, "required_gb": descriptor.ram_required_gb},
            )

    def _is_validated(self, path: Path, size: int, mtime_ns: int) -> bool:
        return self._validated == (path, size, mtime_ns)

    def _remember(self, path: Path) -> None:
        stat = path.stat()
        self._validated = (path, stat.st_size, stat.st_mtime_ns)

    def _forget(self, path: Path | None = None) -> None:
        if path is None or (self._validated is not None and self._validated[0] == path):
            self._validated = None

    def _persist(self) -> None:
        if self._persist_choices:
            save_config(self._config, self._config_path)

    # -- ensure / download -------------------------------------------------

    def ensure_model(self, model_id: str | None = None) -> Path:
        """Return the path of a verified model file, downloading it if needed.

        A previously validated file is trusted while its size and mtime are
        unchanged.

        Raises:
            IncompleteDownloadError: The transfer stopped short; resume later.
            DelveError: Any other typed download or requirement failure.
        """
        descriptor = self._descriptor(model_id)
        return self._ensure.run(descriptor.id, lambda: self._ensure_model(descriptor))

    def _ensure_model(self, descriptor: ModelDescriptor) -> Path:
        path = self._downloader.model_path(descriptor.filename)

        if path.exists():
            stat = path.stat()
            if self._is_validated(path, stat.st_size, stat.st_mtime_ns):
                logger.debug("Model %s already validated, skipping hash", descriptor.id)
                return path

            result = self._downloader.validate(path, descriptor)
            if result.valid:
                self._remember(path)
                logger.info("Model %s already downloaded and validated", descriptor.id)
                return path

            self._forget(path)
            path.unlink(missing_ok=True)
            logger.info("Existing model invalid (%s), re-downloading", result.reason)

        try:
            path = self._download(descriptor)
        except IncompleteDownloadError as e:
            logger.info("Download incomplete, keeping partial for resume")
            raise IncompleteDownloadError(
                INCOMPLETE_MESSAGE,
                actual_size=e.actual_size,
                expected_size=e.expected_size,
                model_id=descriptor.id,
                cause=e,
            ) from e

        self._remember(path)
        return path

    def _download(
        self, descriptor: ModelDescriptor, on_progress: ProgressCallback | None = None
    ) -> Path:
        base = {"model_id": descriptor.id, "model": descriptor.name}

        def forward(progress: DownloadProgress) -> None:
            self.events.emit(Event(DownloadEventType.PROGRESS, {**base, **progress.to_dict()}))
            if on_progress is not None:
                on_progress(progress)

        try:
            self._check_requirements(descriptor)
            self.events.emit(Event(DownloadEventType.STARTED, dict(base)))
            path = self._downloader.acquire(descriptor, forward)
        except DelveError as e:
            category = classify_failure(e)
            self.events.emit(
                Event(
                    DownloadEventType.ERROR,
                    {
                        **base,
                        "error": e.message,
                        "error_type": type(e).__name__,
                        "category": category.value,
                        "hint": FAILURE_HINTS[category],
                    },
                )
            )
            raise

        self.events.emit(
            Event(
                DownloadEventType.COMPLETE,
                {**base, "path": str(path), "size": path.stat().st_size},
            )
        )
        return path

    def download_model(
        self, model_id: str | None = None, on_progress: ProgressCallback | None = None
    ) -> dict[str, Any]:
        """Download (or resume) a model, then load it into the engine."""
        try:
            descriptor = self._descriptor(model_id)
            path = self._download(descriptor, on_progress)
        except DelveError as e:
            logger.warning("Download of %s failed: %s", model_id or "default model", e)
            return failure_result(e)

        self._remember(path)
        load = self.load_model(descriptor.id)
        if not load["success"]:
            logger.warning("Downloaded %s but load failed: %s", descriptor.id, load["error"])

        return {"success": True, "path": str(path), "size": path.stat().st_size}

    def delete_model(self, model_id: str | None = None) -> dict[str, Any]:
        """Delete a model file and its partial, unloading it if loaded."""
        try:
            descriptor = self._descriptor(model_id)
        except DelveError as e:
            return failure_result(e)

        try:
            removed = self._downloader.delete(descriptor.filename)
        except OSError as e:
            logger.error("Failed to delete model %s: %s", descriptor.id, e)
            return failure_result(e)

        self._forget(self._downloader.model_path(descriptor.filename))
        if self.current_model == descriptor.id:
            self._engine.unload()
            self.current_model = None

        return {"success": True, "deleted": removed, "model_id": descriptor.id}

    # -- load / chat -------------------------------------------------------

    def load_model(self, model_id: str | None = None) -> dict[str, Any]:
        """Load a downloaded model with the configured runtime options."""
        try:
            descriptor = self._descriptor(model_id)
        except DelveError as e:
            return failure_result(e)

        llm = self._config.llm
        options = LoadOptions(
            gpu=llm.gpu,
            context_size=llm.context_size,
            batch_size=llm.batch_size,
            threads=llm.threads,
        )
        result = self._engine.load_model(self._downloader.model_path(descriptor.filename), options)

        if result["success"]:
            self.current_model = descriptor.id
            if llm.model_id != descriptor.id:
                llm.model_id = descriptor.id
                self._persist()
        return result

    def _ensure_loaded(self, descriptor: ModelDescriptor) -> dict[str, Any] | None:
        if self._engine.is_model_loaded() and self.current_model == descriptor.id:
            return None
        return self.load_model(descriptor.id)

    def chat(self, options: ChatOptions) -> dict[str, Any]:
        """Generate a full response."""
        try:
            descriptor = self._descriptor(options.model)
            self.ensure_model(descriptor.id)
            load = self._ensure_loaded(descriptor)
            if load is not None and not load["success"]:
                return load
            return self._engine.generate(options.prompt, options.to_request())
        except DelveError as e:
            logger.error("Chat failed: %s", e)
            return failure_result(e)
        except Exception as e:
            logger.exception("Chat failed")
            return failure_result(e)

    def chat_stream(
        self, options: ChatOptions, on_chunk: ChunkCallback | None = None
    ) -> dict[str, Any]:
        """Generate while streaming chunks to ``on_chunk``. Cancellation is not an error."""
        try:
            descriptor = self._descriptor(options.model)
            self.ensure_model(descriptor.id)
            load = self._ensure_loaded(descriptor)
            if load is not None and not load["success"]:
                return load
            return self._engine.generate_stream(options.prompt, options.to_request(), on_chunk)
        except DelveError as e:
            logger.error("Chat stream failed: %s", e)
            return failure_result(e)
        except Exception as e:
            logger.exception("Chat stream failed")
            return failure_result(e)

    def abort(self) -> bool:
        return self._engine.abort_generation()

    def test_connection(self, model_id: str | None = None) -> dict[str, Any]:
        """Load the model and run a tiny real generation."""
        try:
            descriptor = self._descriptor(model_id)
            self._check_requirements(descriptor)
        except DelveError as e:
            return failure_result(e)

        load = self.load_model(descriptor.id)
        if not load["success"]:
            return load

        start = time.perf_counter()
        result = self._engine.generate(
            TEST_PROMPT, GenerationRequest(max_tokens=10, temperature=0.1)
        )
        latency_ms = int((time.perf_counter() - start) * 1000)

        if not result["success"]:
            return result
        return {
            "success": True,
            "message": f"Model loaded and responding ({latency_ms}ms)",
            "model": descriptor.name,
            "latency_ms": latency_ms,
        }

    # -- catalog / config --------------------------------------------------

    def list_models(self) -> list[dict[str, Any]]:
        """Downloaded models, largest first."""
        models = []
        for entry in self._downloader.list_downloaded():
            spec = get_model_spec_by_filename(entry["filename"])
            models.append(
                {
                    "id": spec.id if spec else None,
                    "name": spec.name if spec else entry["filename"],
                    "filename": entry["filename"],
                    "path": entry["path"],
                    "size": entry["size"],
                    "size_mb": round(entry["size"] / (1024 * 1024), 2),
                    "format": spec.format if spec else "GGUF",
                }
            )
        return models

    def get_available_models(self) -> list[dict[str, Any]]:
        return [spec.to_dict() for spec in get_all_models()]

    def get_config(self) -> dict[str, Any]:
        llm = self._config.llm
        return {
            "current_model": self.current_model,
            "default_model": llm.model_id,
            "enabled": llm.enabled,
            "gpu": llm.gpu,
            "context_size": llm.context_size,
            "temperature": llm.temperature.model_dump(),
            "max_tokens": llm.max_tokens,
            "threads": llm.threads,
            "model_dir": str(self._downloader.model_dir),
            "memory": asdict(get_memory_info()),
            "supports_gpu": supports_gpu(),
        }

    def set_model(self, model_id: str) -> dict[str, Any]:
        """Make ``model_id`` the default after checking RAM requirements."""
        try:
            descriptor = self._descriptor(model_id)
            self._check_requirements(descriptor)
        except DelveError as e:
            return {"valid": False, "reason": e.message}

        self._config.llm.model_id = descriptor.id
        self._persist()
        return {"valid": True, "model": descriptor.to_dict()}

    # -- server / lifecycle ------------------------------------------------

    def start_server(self) -> dict[str, Any]:
        """Start the supervised inference server, if one is attached."""
        if self._supervisor is None:
            return {
                "success": False,
                "error": "No inference server configured",
                "error_type": "ServiceError",
                "code": ErrorCode.SVC_START_FAILED.value,
            }
        try:
            handle = self._supervisor.start()
        except DelveError as e:
            logger.error("Inference server failed to start: %s", e)
            return failure_result(e)
        return {
            "success": True,
            **handle.to_dict(),
            "base_url": getattr(self._supervisor, "base_url", None),
        }

    def shutdown(self) -> dict[str, Any]:
        """Unload the engine and stop the server."""
        try:
            self._engine.unload()
            self.current_model = None
            if self._supervisor is not None:
                self._supervisor.stop()
        except DelveError as e:
            logger.error("Failed to shutdown bridge: %s", e)
            return failure_result(e)
        return {"success": True}
