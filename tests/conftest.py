"""Pytest configuration for delve tests.

Provides an in-memory HTTP server that speaks just enough of the protocol
(HEAD, GET, redirects, byte ranges, 416) for the downloader, a scripted
runtime backend for the inference engine, and isolation of the per-user
config file.
"""

import hashlib
import re
import threading
from pathlib import Path

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from contracts.download import ModelDescriptor
from delve import config as config_module
from delve.config import DelveConfig, get_model_dir, reset_config
from models.loader import reset_engine

MODEL_URL = "https://models.example/qwen/model.gguf"
MODEL_FILENAME = "test-model-q4_k_m.gguf"

_RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")


def make_model_bytes(size: int = 12_000) -> bytes:
    """GGUF-headed payload with a deterministic body."""
    body = bytes(i % 251 for i in range(size - 4))
    return b"GGUF" + body


# =============================================================================
# Fake HTTP server
# =============================================================================


class FakeResponse:
    """Minimal stand-in for requests.Response with streaming support."""

    def __init__(self, status_code, body=b"", headers=None, fail_after=None, gate=None):
        self.status_code = status_code
        self.headers = CaseInsensitiveDict(headers or {})
        self._body = body
        self._fail_after = fail_after
        self._gate = gate
        self.closed = False

    def iter_content(self, chunk_size=1024):
        if self._gate is not None:
            self._gate.wait(timeout=5)
        sent = 0
        for start in range(0, len(self._body), chunk_size):
            chunk = self._body[start : start + chunk_size]
            if self._fail_after is not None and sent + len(chunk) > self._fail_after:
                keep = self._fail_after - sent
                if keep > 0:
                    yield chunk[:keep]
                raise requests.exceptions.ConnectionError("Connection reset by peer")
            sent += len(chunk)
            yield chunk

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FakeServer:
    """In-memory stand-in for a requests.Session serving one artifact.

    Attributes:
        content: Bytes served at ``url``.
        redirects: Mapping of URL to redirect Location.
        supports_range: When False, Range headers are ignored (200 full body).
        fail_next_after: Drop the next transfer after this many body bytes.
        status_override: Status returned for every GET when set.
        head_status: Status returned for every HEAD when set.
        content_range_override: Content-Range sent with 206 responses when set.
        gate: Event every transfer body waits on before streaming.
        requests: Log of (method, url, headers) for every call.
    """

    def __init__(self, content: bytes, url: str = MODEL_URL):
        self.url = url
        self.content = content
        self.redirects: dict[str, str] = {}
        self.supports_range = True
        self.fail_next_after: int | None = None
        self.status_override: int | None = None
        self.head_status: int | None = None
        self.content_range_override: str | None = None
        self.gate: threading.Event | None = None
        self.requests: list[tuple[str, str, dict]] = []
        self._lock = threading.Lock()

    @property
    def gets(self):
        return [r for r in self.requests if r[0] == "GET"]

    @property
    def transfers(self):
        """GETs that were not one-byte size probes."""
        return [r for r in self.gets if r[2].get("Range") != "bytes=0-0"]

    def head(self, url, allow_redirects=False, timeout=None, **kwargs):
        with self._lock:
            self.requests.append(("HEAD", url, {}))
        if self.head_status is not None:
            return FakeResponse(self.head_status)
        if url in self.redirects:
            return FakeResponse(302, headers={"Location": self.redirects[url]})
        if url != self.url:
            return FakeResponse(404)
        return FakeResponse(200, headers={"Content-Length": str(len(self.content))})

    def get(self, url, headers=None, stream=False, allow_redirects=True, timeout=None, **kwargs):
        headers = dict(headers or {})
        with self._lock:
            self.requests.append(("GET", url, headers))

        if url in self.redirects:
            return FakeResponse(302, headers={"Location": self.redirects[url]})
        if self.status_override is not None:
            return FakeResponse(self.status_override)
        if url != self.url:
            return FakeResponse(404)

        total = len(self.content)
        range_header = headers.get("Range")
        is_probe = range_header == "bytes=0-0"
        fail_after = None
        if not is_probe:
            fail_after, self.fail_next_after = self.fail_next_after, None

        match = _RANGE_RE.match(range_header or "")
        if match and self.supports_range:
            start = int(match.group(1))
            end = int(match.group(2)) if match.group(2) else total - 1
            if start >= total:
                return FakeResponse(416, headers={"Content-Range": f"bytes */{total}"})
            end = min(end, total - 1)
            content_range = self.content_range_override or f"bytes {start}-{end}/{total}"
            return FakeResponse(
                206,
                body=self.content[start : end + 1],
                headers={
                    "Content-Range": content_range,
                    "Content-Length": str(end - start + 1),
                },
                fail_after=fail_after,
                gate=None if is_probe else self.gate,
            )

        return FakeResponse(
            200,
            body=self.content,
            headers={"Content-Length": str(total)},
            fail_after=fail_after,
            gate=None if is_probe else self.gate,
        )


# =============================================================================
# Fake runtime backend
# =============================================================================


class FakeModel:
    """Handle returned by FakeRuntime.load()."""

    def __init__(self, path, options):
        self.path = path
        self.options = options
        self.closed = False
        self.resets = 0


class FakeRuntime:
    """Scripted RuntimeBackend.

    Attributes:
        chunks: Text chunks yielded by every stream_chat call.
        on_chunk_yielded: Called with the index after each chunk is yielded.
        fail_load: Exception raised by load().
        fail_after_chunks: Raise RuntimeError after this many chunks.
        calls: Ordered log of (method, detail) tuples. A chunk decoded on a
            closed model is logged as ("decode_after_close", chunk).
    """

    def __init__(self, chunks=None):
        self.chunks = list(chunks) if chunks is not None else ["Hello", " ", "world"]
        self.on_chunk_yielded = None
        self.fail_load: Exception | None = None
        self.fail_after_chunks: int | None = None
        self.calls: list[tuple[str, object]] = []
        self.last_messages = None
        self.last_params = None
        self.compiled: list[dict] = []

    def load(self, path, options):
        self.calls.append(("load", path))
        if self.fail_load is not None:
            raise self.fail_load
        return FakeModel(path, options)

    def stream_chat(self, model, messages, params):
        self.calls.append(("stream_chat", len(messages)))
        self.last_messages = messages
        self.last_params = params
        for index, chunk in enumerate(self.chunks):
            if self.fail_after_chunks is not None and index >= self.fail_after_chunks:
                raise RuntimeError("decode failed")
            if model.closed:
                self.calls.append(("decode_after_close", chunk))
            yield chunk
            if self.on_chunk_yielded is not None:
                self.on_chunk_yielded(index)

    def compile_grammar(self, schema):
        self.compiled.append(schema)
        return ("grammar", len(self.compiled))

    def reset(self, model):
        self.calls.append(("reset", model.path))
        model.resets += 1

    def close(self, model):
        self.calls.append(("close", model.path))
        model.closed = True

    def vocab_size(self, model):
        return 151936


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the shared config at a temp file and reset singletons around each test."""
    monkeypatch.setattr(config_module, "CONFIG_PATH", tmp_path / "home" / "config.json")
    monkeypatch.setattr(config_module, "DEFAULT_DATA_DIR", tmp_path / "home")
    reset_config()
    reset_engine()
    yield
    reset_engine()
    reset_config()


@pytest.fixture
def config(tmp_path) -> DelveConfig:
    """Config whose data directory lives under tmp_path."""
    return DelveConfig(data_dir=str(tmp_path / "data"))


@pytest.fixture
def model_dir(config) -> Path:
    return get_model_dir(config)


@pytest.fixture
def model_bytes() -> bytes:
    return make_model_bytes()


@pytest.fixture
def descriptor(model_bytes) -> ModelDescriptor:
    """Descriptor matching the bytes served by fake_server."""
    return ModelDescriptor(
        id="test:tiny",
        name="Tiny Test Model",
        filename=MODEL_FILENAME,
        url=MODEL_URL,
        expected_size=len(model_bytes),
        sha256=hashlib.sha256(model_bytes).hexdigest(),
        ram_required_gb=0,
    )


@pytest.fixture
def fake_server(model_bytes) -> FakeServer:
    return FakeServer(model_bytes)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def model_file(model_dir, model_bytes) -> Path:
    """A complete, valid artifact already at its canonical path."""
    model_dir.mkdir(parents=True, exist_ok=True)
    path = model_dir / MODEL_FILENAME
    path.write_bytes(model_bytes)
    return path
