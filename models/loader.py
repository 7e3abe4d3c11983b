"""GGUF inference engine with mode-scoped chat sessions.

Handles model loading/unloading with memory checks, named generation modes
(each with its own system prompt), grammar-constrained JSON output and
streaming generation with cooperative cancellation.

The runtime is pluggable. The default ``LlamaCppRuntime`` wraps
``llama_cpp.Llama`` and imports it lazily, so this module imports without
llama-cpp-python installed:

    from models.loader import get_engine
    from contracts import GenerationRequest, LoadOptions

    engine = get_engine()
    engine.load_model("qwen2.5-1.5b-instruct-q4_k_m.gguf", LoadOptions(gpu=True))
    result = engine.generate("Describe the room.", GenerationRequest(mode="levelIntro"))
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import closing
from pathlib import Path
from typing import Any, Protocol

import psutil

from contracts.models import ChunkCallback, GenerationRequest, LoadOptions
from delve.config import DelveConfig, get_config, get_model_dir
from delve.errors import (
    DelveError,
    GenerationBusyError,
    ModelGenerationError,
    ModelLoadError,
    NoModelLoadedError,
    UnknownModeError,
    model_not_found,
    model_out_of_memory,
)
from delve.observability.logging import timed_operation
from models.json_grammar import GrammarCache
from models.registry import get_memory_info, recommended_context_size

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024

# Runtime buffers (KV cache, scratch) on top of the weights
MEMORY_BUFFER_MULTIPLIER = 1.3

DEFAULT_MAX_TOKENS = 500

# Poll interval while waiting for an aborted generation to release the context
DRAIN_POLL_SECONDS = 0.05


class RuntimeBackend(Protocol):
    """Thin facade over the native inference library."""

    def load(self, path: Path, options: LoadOptions) -> Any:
        """Load weights and allocate the decode context. Returns a model handle."""
        ...

    def stream_chat(
        self, model: Any, messages: list[dict[str, str]], params: dict[str, Any]
    ) -> Iterator[str]:
        """Yield generated text chunks for a chat completion."""
        ...

    def compile_grammar(self, schema: dict[str, Any]) -> Any:
        """Compile a JSON Schema into a sampling grammar."""
        ...

    def reset(self, model: Any) -> None:
        """Clear the decode context's KV state."""
        ...

    def close(self, model: Any) -> None:
        """Free the model handle."""
        ...

    def vocab_size(self, model: Any) -> int: ...


class LlamaCppRuntime:
    """llama-cpp-python backend."""

    def load(self, path: Path, options: LoadOptions) -> Any:
        from llama_cpp import Llama

        return Llama(
            model_path=str(path),
            n_ctx=options.context_size,
            n_batch=options.batch_size,
            n_threads=options.threads,
            n_gpu_layers=options.gpu_layers,
            verbose=False,
        )

    def stream_chat(
        self, model: Any, messages: list[dict[str, str]], params: dict[str, Any]
    ) -> Iterator[str]:
        for chunk in model.create_chat_completion(messages=messages, stream=True, **params):
            content = chunk["choices"][0]["delta"].get("content")
            if content:
                yield content

    def compile_grammar(self, schema: dict[str, Any]) -> Any:
        from llama_cpp import LlamaGrammar

        return LlamaGrammar.from_json_schema(json.dumps(schema), verbose=False)

    def reset(self, model: Any) -> None:
        model.reset()

    def close(self, model: Any) -> None:
        model.close()

    def vocab_size(self, model: Any) -> int:
        return int(model.n_vocab())


class DecodeContext:
    """The loaded model's decode state, shared by every session over its lifetime."""

    def __init__(self, runtime: RuntimeBackend, model: Any, context_size: int) -> None:
        self.runtime = runtime
        self.model = model
        self.context_size = context_size

    def stream(self, messages: list[dict[str, str]], params: dict[str, Any]) -> Iterator[str]:
        return self.runtime.stream_chat(self.model, messages, params)

    def reset(self) -> None:
        self.runtime.reset(self.model)


class ChatSession:
    """A system prompt bound to a decode context.

    Sessions are cheap: switching modes replaces the session and keeps the
    context. Each prompt is a single user turn after the system prompt.
    """

    def __init__(self, context: DecodeContext, system_prompt: str | None = None) -> None:
        self.context = context
        self.system_prompt = system_prompt

    def messages(self, prompt: str) -> list[dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    def stream(self, prompt: str, params: dict[str, Any]) -> Iterator[str]:
        return self.context.stream(self.messages(prompt), params)


def _failure(error: DelveError) -> dict[str, Any]:
    return {
        "success": False,
        "error": error.message,
        "error_type": type(error).__name__,
        "code": error.code.value,
    }


class InferenceEngine:
    """Owns one loaded model, its decode context and the active chat session.

    One generation runs at a time. An overlapping generate call is rejected
    with GenerationBusyError rather than queued. Unloading or replacing the
    model aborts the active generation and waits for it to stop decoding
    before anything is disposed.
    """

    def __init__(
        self,
        config: DelveConfig | None = None,
        runtime: RuntimeBackend | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config: Configuration. Uses the shared config if not provided.
            runtime: Inference backend. Defaults to LlamaCppRuntime.
        """
        self._config = config
        self._runtime: RuntimeBackend = runtime or LlamaCppRuntime()
        self._model: Any = None
        self._context: DecodeContext | None = None
        self._session: ChatSession | None = None
        self._mode: str | None = None
        self._model_path: Path | None = None
        self._options: LoadOptions | None = None
        self._grammars = GrammarCache(self._runtime.compile_grammar)
        self._lock = threading.RLock()
        self._generation_lock = threading.Lock()
        self._abort_event: threading.Event | None = None
        self._generating_thread: int | None = None
        self._unload_pending = False

    @property
    def config(self) -> DelveConfig:
        return self._config or get_config()

    @property
    def mode(self) -> str | None:
        return self._mode

    @property
    def session(self) -> ChatSession | None:
        return self._session

    @property
    def model_path(self) -> Path | None:
        return self._model_path

    @property
    def grammars(self) -> GrammarCache:
        return self._grammars

    def is_model_loaded(self) -> bool:
        return self._model is not None and self._context is not None and self._session is not None

    # -- loading -----------------------------------------------------------

    def resolve_path(self, model_path: str | Path) -> Path:
        path = Path(model_path).expanduser()
        if not path.is_absolute():
            path = get_model_dir(self.config) / path
        return path

    def load_model(
        self, model_path: str | Path, options: LoadOptions | None = None
    ) -> dict[str, Any]:
        """Load a GGUF file, replacing any loaded model.

        Returns:
            ``{"success": True, "context_size", "gpu", "path"}`` or a failure dict.
        """
        options = options or LoadOptions()
        path = self.resolve_path(model_path)

        if not path.exists():
            error = model_not_found(str(path))
            logger.error("Model not found: %s", path)
            return _failure(error)

        available_mb = int(psutil.virtual_memory().available / BYTES_PER_MB)
        required_mb = int(path.stat().st_size / BYTES_PER_MB * MEMORY_BUFFER_MULTIPLIER)
        if available_mb < required_mb:
            logger.warning(
                "Insufficient memory for model load: %dMB available, %dMB required",
                available_mb,
                required_mb,
            )
            return _failure(model_out_of_memory(path.name, available_mb, required_mb))

        if self._in_generation():
            return _failure(
                GenerationBusyError("Cannot load a model from inside a generation callback")
            )

        self._drain_generation()
        try:
            with self._lock:
                self._dispose()

                try:
                    with timed_operation(logger, "model.load", path=str(path)) as ctx:
                        model = self._runtime.load(path, options)
                        ctx["context_size"] = options.context_size
                except Exception as e:
                    logger.exception("Failed to load model %s", path)
                    return _failure(
                        ModelLoadError(
                            f"Failed to load model: {e}",
                            model_name=path.name,
                            model_path=str(path),
                            cause=e,
                        )
                    )

                self._model = model
                self._context = DecodeContext(self._runtime, model, options.context_size)
                self._session = ChatSession(self._context)
                self._mode = None
                self._model_path = path
                self._options = options
        finally:
            self._generation_lock.release()

        return {
            "success": True,
            "context_size": options.context_size,
            "gpu": options.gpu,
            "path": str(path),
        }

    def unload(self) -> None:
        """Dispose session, then reset the decode context, then close the model.

        An active generation is aborted first and nothing is disposed until it
        has stopped decoding. Called from inside a generation callback, the
        disposal runs when that generation returns.
        """
        if self._in_generation():
            self.abort_generation()
            self._unload_pending = True
            return

        self._drain_generation()
        try:
            self._dispose()
        finally:
            self._generation_lock.release()

    def _in_generation(self) -> bool:
        return self._generating_thread == threading.get_ident()

    def _drain_generation(self) -> None:
        """Abort any active generation and take the generation lock."""
        self.abort_generation()
        while not self._generation_lock.acquire(timeout=DRAIN_POLL_SECONDS):
            self.abort_generation()

    def _dispose(self) -> None:
        # Caller holds the generation lock
        with self._lock:
            self._session = None
            self._mode = None
            if self._context is not None:
                self._context.reset()
                self._context = None
            if self._model is not None:
                self._runtime.close(self._model)
                self._model = None
                logger.info("Model unloaded: %s", self._model_path)
            self._model_path = None
            self._options = None
            self._grammars.clear()

    def _begin_generation(self) -> threading.Event | None:
        """Take the generation lock without waiting. Returns the abort event, or None if busy."""
        if not self._generation_lock.acquire(blocking=False):
            return None
        abort = threading.Event()
        self._abort_event = abort
        self._generating_thread = threading.get_ident()
        return abort

    def _end_generation(self) -> None:
        self._abort_event = None
        self._generating_thread = None
        try:
            if self._unload_pending:
                self._unload_pending = False
                self._dispose()
        finally:
            self._generation_lock.release()

    # -- modes -------------------------------------------------------------

    def set_mode(self, mode: str | None) -> None:
        """Install the system prompt for ``mode``. Same mode twice is a no-op.

        Raises:
            NoModelLoadedError: No model is loaded.
            UnknownModeError: The mode has no configured profile.
        """
        with self._lock:
            if self._context is None:
                raise NoModelLoadedError("Cannot set mode: no model loaded")
            if mode == self._mode and self._session is not None:
                return

            modes = self.config.llm.modes
            if mode is not None and mode not in modes:
                raise UnknownModeError(
                    f"Unknown mode: {mode}", mode=mode, available=sorted(modes)
                )

            logger.debug("Switching mode from %r to %r", self._mode, mode)
            system_prompt = modes[mode].system_prompt if mode is not None else None
            self._session = ChatSession(self._context, system_prompt)
            self._mode = mode

    def resolve_temperature(self, mode: str | None, override: float | None = None) -> float:
        if override is not None:
            return override
        return self.config.llm.temperature.resolve(mode)

    def _sampling_params(self, options: GenerationRequest) -> dict[str, Any]:
        llm = self.config.llm
        mode = options.mode if options.mode is not None else self._mode
        params: dict[str, Any] = {
            "max_tokens": options.max_tokens or llm.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": self.resolve_temperature(mode, options.temperature),
            "top_p": options.top_p if options.top_p is not None else llm.top_p,
            "top_k": options.top_k if options.top_k is not None else llm.top_k,
            "repeat_penalty": (
                options.repeat_penalty
                if options.repeat_penalty is not None
                else llm.repeat_penalty
            ),
        }
        if options.seed is not None:
            params["seed"] = options.seed
        if options.json_schema:
            params["grammar"] = self._grammars.get(options.json_schema)
        return params

    # -- generation --------------------------------------------------------

    def generate(self, prompt: str, options: GenerationRequest | None = None) -> dict[str, Any]:
        """Run one full decode.

        Returns:
            ``{"success": True, "text"}`` plus ``parsed`` when a schema was given
            and the output is valid JSON, or a failure dict. An aborted decode
            returns the text so far with ``"cancelled": True``.
        """
        options = options or GenerationRequest()
        if not self.is_model_loaded():
            return _failure(NoModelLoadedError())
        abort = self._begin_generation()
        if abort is None:
            return _failure(GenerationBusyError())

        cancel_token = options.cancel_token
        try:
            if options.mode is not None:
                self.set_mode(options.mode)
            params = self._sampling_params(options)
            session = self._session
            if session is None:
                return _failure(NoModelLoadedError())

            parts: list[str] = []
            cancelled = False
            with timed_operation(logger, "model.generate", mode=self._mode) as ctx:
                with closing(session.stream(prompt, params)) as chunks:
                    for chunk in chunks:
                        if abort.is_set() or (cancel_token is not None and cancel_token.is_set()):
                            cancelled = True
                            break
                        parts.append(chunk)
                text = "".join(parts)
                ctx["chars"] = len(text)

            result: dict[str, Any] = {"success": True, "text": text}
            if cancelled:
                result["cancelled"] = True
                logger.info("Generation aborted after %d chars", len(text))
            elif options.json_schema:
                parsed = _parse_json(text)
                if parsed is not None:
                    result["parsed"] = parsed
            return result
        except DelveError as e:
            return _failure(e)
        except Exception as e:
            logger.exception("Generation failed")
            return _failure(
                ModelGenerationError(f"Generation failed: {e}", prompt=prompt, cause=e)
            )
        finally:
            self._end_generation()

    def generate_stream(
        self,
        prompt: str,
        options: GenerationRequest | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> dict[str, Any]:
        """Decode while calling ``on_chunk`` for every text chunk.

        Cancellation (``options.cancel_token`` or abort_generation()) is checked
        before each chunk and returns the text emitted so far.

        Returns:
            ``{"success": True, "text", "cancelled"}`` plus ``parsed`` for a
            completed schema-constrained stream.

        Raises:
            NoModelLoadedError: No model is loaded.
            GenerationBusyError: Another generation is running.
            ModelGenerationError: The runtime failed mid-stream.
        """
        options = options or GenerationRequest()
        if not self.is_model_loaded():
            raise NoModelLoadedError()
        abort = self._begin_generation()
        if abort is None:
            raise GenerationBusyError()

        cancel_token = options.cancel_token
        emitted: list[str] = []
        cancelled = False

        def stopped() -> bool:
            return abort.is_set() or (cancel_token is not None and cancel_token.is_set())

        try:
            if options.mode is not None:
                self.set_mode(options.mode)
            params = self._sampling_params(options)
            session = self._session
            if session is None:
                raise NoModelLoadedError()

            try:
                with closing(session.stream(prompt, params)) as chunks:
                    for chunk in chunks:
                        if stopped():
                            cancelled = True
                            break
                        emitted.append(chunk)
                        if on_chunk is not None:
                            on_chunk(chunk)
                        # The callback may have aborted or unloaded
                        if stopped():
                            cancelled = True
                            break
            except DelveError:
                raise
            except Exception as e:
                logger.error("Streaming generation failed: %s", e)
                raise ModelGenerationError(
                    f"Streaming generation failed: {e}", prompt=prompt, cause=e
                ) from e
        finally:
            self._end_generation()

        text = "".join(emitted)
        result: dict[str, Any] = {"success": True, "text": text, "cancelled": cancelled}
        if cancelled:
            logger.info("Generation cancelled after %d chunks", len(emitted))
        elif options.json_schema:
            parsed = _parse_json(text)
            if parsed is not None:
                result["parsed"] = parsed
        return result

    def abort_generation(self) -> bool:
        """Signal the active generation to stop. Returns False if none is active."""
        event = self._abort_event
        if event is None:
            return False
        event.set()
        return True

    # -- info --------------------------------------------------------------

    def get_model_info(self) -> dict[str, Any] | None:
        if not self.is_model_loaded() or self._context is None:
            return None
        return {
            "is_loaded": True,
            "context_size": self._context.context_size,
            "vocab_size": self._runtime.vocab_size(self._model),
            "gpu_layers": self._options.gpu_layers if self._options else 0,
            "mode": self._mode,
            "path": str(self._model_path),
        }

    def get_available_memory(self) -> dict[str, Any]:
        info = get_memory_info()
        return {
            "total_ram": info.total_gb,
            "free_ram": info.free_gb,
            "recommended_context_size": recommended_context_size(info.total_gb),
        }


def _parse_json(text: str) -> Any | None:
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        logger.debug("JSON parse failed, returning raw text: %s", e)
        return None


# Singleton engine for convenience
_engine: InferenceEngine | None = None
_engine_lock = threading.Lock()


def get_engine() -> InferenceEngine:
    """Get or create the shared engine.

    Thread-safe using double-check locking pattern.
    """
    global _engine

    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = InferenceEngine()
    return _engine


def reset_engine() -> None:
    """Unload and drop the shared engine (for tests and reconfiguration)."""
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.unload()
        _engine = None
