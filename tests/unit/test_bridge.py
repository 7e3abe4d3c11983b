"""Unit tests for ModelBridge orchestration.

The bridge is wired to the in-memory FakeServer and FakeRuntime, with the
test descriptor registered in the model registry for the duration of a test.
"""

import json
import os
import threading
from dataclasses import replace
from unittest.mock import MagicMock, patch

import pytest

from delve.bridge import (
    INCOMPLETE_MESSAGE,
    ChatOptions,
    FailureCategory,
    ModelBridge,
    classify_failure,
    failure_result,
)
from delve.errors import (
    ErrorCode,
    HashMismatchError,
    HeaderInvalidError,
    IncompleteDownloadError,
    NetworkError,
    ProcessStartupTimeoutError,
    RedirectLoopError,
    ResourceError,
    SizeMismatchError,
    UnknownModelError,
)
from delve.events import DownloadEventType
from delve.services.base import ProcessHandle
from models import downloader as downloader_module
from models.downloader import ArtifactDownloader
from models.loader import InferenceEngine
from models.registry import MODEL_REGISTRY
from models.schemas import JSON_SCHEMAS


@pytest.fixture
def registered(descriptor, monkeypatch):
    monkeypatch.setitem(MODEL_REGISTRY, descriptor.id, descriptor)
    return descriptor


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "bridge-config.json"


@pytest.fixture
def make_bridge(config, model_dir, fake_server, fake_runtime, registered, config_path):
    config.llm.model_id = registered.id

    def factory(total_ram_gb=16, supervisor=None):
        return ModelBridge(
            config,
            downloader=ArtifactDownloader(model_dir, session=fake_server, sleep=lambda delay: None),
            engine=InferenceEngine(config, runtime=fake_runtime),
            supervisor=supervisor,
            config_path=config_path,
            total_ram_gb=lambda: total_ram_gb,
        )

    return factory


@pytest.fixture
def bridge(make_bridge):
    return make_bridge()


@pytest.fixture
def events(bridge):
    received = []
    bridge.subscribe(received.append)
    return received


class TestClassifyFailure:
    """Tests for download failure classification."""

    @pytest.mark.parametrize(
        ("error", "category"),
        [
            (IncompleteDownloadError(), FailureCategory.INCOMPLETE),
            (HashMismatchError(), FailureCategory.CORRUPT),
            (HeaderInvalidError(), FailureCategory.CORRUPT),
            (SizeMismatchError(), FailureCategory.CORRUPT),
            (NetworkError(), FailureCategory.NETWORK),
            (RedirectLoopError(), FailureCategory.NETWORK),
            (UnknownModelError(), FailureCategory.FATAL),
            (ValueError("boom"), FailureCategory.FATAL),
        ],
    )
    def test_categories(self, error, category):
        """Incomplete, corrupt and connectivity failures are told apart."""
        assert classify_failure(error) is category

    def test_failure_result_shape(self):
        """Failures carry type, code, category and resumability."""
        result = failure_result(IncompleteDownloadError("short"))
        assert result == {
            "success": False,
            "error": "short",
            "error_type": "IncompleteDownloadError",
            "code": ErrorCode.DL_INCOMPLETE.value,
            "category": "incomplete",
            "resumable": True,
        }

    def test_failure_result_for_plain_exception(self):
        """Unexpected exceptions map to UNKNOWN."""
        result = failure_result(RuntimeError("oops"))
        assert result["code"] == ErrorCode.UNKNOWN.value
        assert result["error_type"] == "RuntimeError"


class TestEnsureModel:
    """Tests for ensure_model()."""

    def test_downloads_when_missing(self, bridge, registered, fake_server, model_bytes, events):
        """A missing artifact is downloaded with lifecycle events."""
        path = bridge.ensure_model()

        assert path.read_bytes() == model_bytes
        types = [e.type for e in events]
        assert types[0] == DownloadEventType.STARTED
        assert DownloadEventType.PROGRESS in types
        assert types[-1] == DownloadEventType.COMPLETE
        assert events[-1].payload["size"] == len(model_bytes)

    def test_existing_file_no_network(self, bridge, model_file, fake_server):
        """A valid existing file is used as is."""
        assert bridge.ensure_model() == model_file
        assert fake_server.requests == []

    def test_validated_file_is_not_rehashed(self, bridge, model_file):
        """A second call trusts the cached validation while size and mtime are unchanged."""
        real = downloader_module.compute_sha256
        with patch.object(downloader_module, "compute_sha256", side_effect=real) as spy:
            bridge.ensure_model()
            bridge.ensure_model()
            assert spy.call_count == 1

            stat = model_file.stat()
            os.utime(model_file, ns=(stat.st_atime_ns, stat.st_mtime_ns + 5_000_000_000))
            bridge.ensure_model()
            assert spy.call_count == 2

    def test_invalid_file_is_hashed_once(self, bridge, model_file, model_bytes):
        """A file that fails validation is removed before the download, not re-checked."""
        data = bytearray(model_bytes)
        data[-1] ^= 0xFF
        model_file.write_bytes(bytes(data))

        real = downloader_module.compute_sha256
        with patch.object(downloader_module, "compute_sha256", side_effect=real) as spy:
            assert bridge.ensure_model() == model_file

        hashed = [call.args[0] for call in spy.call_args_list]
        assert hashed.count(model_file) == 1
        assert model_file.read_bytes() == model_bytes

    def test_incomplete_download(self, bridge, registered, fake_server, model_bytes):
        """A short transfer surfaces as a resume-later error and keeps the partial."""
        fake_server.content = model_bytes[:5000]

        with pytest.raises(IncompleteDownloadError) as exc_info:
            bridge.ensure_model()

        assert exc_info.value.message == INCOMPLETE_MESSAGE
        partial = bridge.downloader.partial_path(registered.filename)
        assert partial.stat().st_size == 5000

    def test_unknown_model(self, bridge):
        """Ids missing from the registry are rejected."""
        with pytest.raises(UnknownModelError):
            bridge.ensure_model("nope:0b")

    def test_insufficient_ram(self, make_bridge, registered, monkeypatch):
        """The RAM requirement is checked before downloading."""
        monkeypatch.setitem(MODEL_REGISTRY, registered.id, replace(registered, ram_required_gb=8))
        bridge = make_bridge(total_ram_gb=4)

        with pytest.raises(ResourceError) as exc_info:
            bridge.ensure_model()

        assert exc_info.value.code == ErrorCode.RES_MEMORY_LOW


class TestDownloadModel:
    """Tests for download_model()."""

    def test_success_loads_model(self, bridge, registered, fake_runtime, model_bytes):
        """A finished download is loaded into the engine."""
        progress = []

        result = bridge.download_model(registered.id, progress.append)

        assert result["success"] is True
        assert result["size"] == len(model_bytes)
        assert progress
        assert bridge.current_model == registered.id
        assert bridge.engine.is_model_loaded()

    def test_concurrent_calls_share_one_transfer(self, bridge, registered, fake_server):
        """Two simultaneous downloads make one GET and get equal results."""
        fake_server.gate = threading.Event()
        results = []

        def worker():
            results.append(bridge.download_model(registered.id))

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        fake_server.gate.set()
        for thread in threads:
            thread.join(timeout=10)

        assert len(fake_server.transfers) == 1
        assert len(results) == 2
        assert results[0] == results[1]
        assert results[0]["success"] is True

    def test_corrupt_download(self, bridge, registered, monkeypatch, events):
        """A digest mismatch is reported as corrupt with an error event."""
        monkeypatch.setitem(MODEL_REGISTRY, registered.id, replace(registered, sha256="0" * 64))

        result = bridge.download_model(registered.id)

        assert result["success"] is False
        assert result["error_type"] == "HashMismatchError"
        assert result["category"] == "corrupt"
        assert result["resumable"] is False
        assert events[-1].type == DownloadEventType.ERROR
        assert events[-1].payload["category"] == "corrupt"

    def test_incomplete_download_is_resumable(self, bridge, registered, fake_server, model_bytes):
        """A short transfer is flagged resumable."""
        fake_server.content = model_bytes[:5000]

        result = bridge.download_model(registered.id)

        assert result["resumable"] is True
        assert result["category"] == "incomplete"

    def test_ram_failure_emits_error_only(self, make_bridge, registered, monkeypatch):
        """No transfer starts when the machine is too small."""
        monkeypatch.setitem(MODEL_REGISTRY, registered.id, replace(registered, ram_required_gb=8))
        bridge = make_bridge(total_ram_gb=4)
        received = []
        bridge.subscribe(received.append)

        result = bridge.download_model(registered.id)

        assert result["code"] == ErrorCode.RES_MEMORY_LOW.value
        assert "Insufficient RAM" in result["error"]
        assert [e.type for e in received] == [DownloadEventType.ERROR]

    def test_subscriber_errors_are_contained(self, bridge, registered):
        """A failing subscriber does not fail the download."""

        def broken(event):
            raise RuntimeError("ui crashed")

        bridge.subscribe(broken)
        assert bridge.download_model(registered.id)["success"] is True

    def test_unsubscribe(self, bridge, registered):
        """Unsubscribed callbacks receive nothing."""
        received = []
        unsubscribe = bridge.subscribe(received.append, {DownloadEventType.COMPLETE})
        unsubscribe()

        bridge.download_model(registered.id)

        assert received == []


class TestChat:
    """Tests for chat() and chat_stream()."""

    def test_chat_loads_and_generates(self, bridge, model_file, fake_runtime):
        """The first chat loads the model; later chats reuse it."""
        first = bridge.chat(ChatOptions(prompt="Enter the crypt"))
        second = bridge.chat(ChatOptions(prompt="Go deeper"))

        assert first == {"success": True, "text": "Hello world"}
        assert second["success"] is True
        assert [name for name, _ in fake_runtime.calls].count("load") == 1

    def test_chat_with_mode_and_schema(self, bridge, model_file, fake_runtime, config):
        """Mode and schema flow through to the engine."""
        fake_runtime.chunks = ['{"room": "Crypt", "threat": "Rats", "oddity": "Hum"}']

        result = bridge.chat(
            ChatOptions(
                prompt="Level 3",
                mode="levelIntro",
                temperature=0.3,
                json_schema=JSON_SCHEMAS["levelIntro"],
            )
        )

        assert result["parsed"]["room"] == "Crypt"
        assert fake_runtime.last_params["temperature"] == 0.3
        system_prompt = config.llm.modes["levelIntro"].system_prompt
        assert fake_runtime.last_messages[0]["content"] == system_prompt

    def test_chat_download_failure(self, bridge, fake_server):
        """Download failures come back as results, never exceptions."""
        fake_server.status_override = 503

        result = bridge.chat(ChatOptions(prompt="hi"))

        assert result["success"] is False
        assert result["category"] == "network"

    def test_chat_load_failure(self, bridge, model_file, fake_runtime):
        """Load failures are returned as is."""
        fake_runtime.fail_load = RuntimeError("bad weights")

        result = bridge.chat(ChatOptions(prompt="hi"))

        assert result["success"] is False
        assert result["code"] == ErrorCode.MDL_LOAD_FAILED.value

    def test_chat_stream(self, bridge, model_file):
        """Chunks are forwarded to the callback."""
        received = []

        result = bridge.chat_stream(ChatOptions(prompt="hi"), received.append)

        assert received == ["Hello", " ", "world"]
        assert result["text"] == "Hello world"
        assert result["cancelled"] is False

    def test_chat_stream_cancelled(self, bridge, model_file):
        """A pre-set cancel token yields an empty, successful result."""
        token = threading.Event()
        token.set()

        result = bridge.chat_stream(ChatOptions(prompt="hi", cancel_token=token))

        assert result == {"success": True, "text": "", "cancelled": True}

    def test_chat_stream_busy(self, bridge, model_file):
        """An overlapping stream is rejected as a result."""
        bridge.load_model()
        bridge.engine._generation_lock.acquire()
        try:
            result = bridge.chat_stream(ChatOptions(prompt="hi"))
        finally:
            bridge.engine._generation_lock.release()

        assert result["code"] == ErrorCode.MDL_BUSY.value

    def test_abort_when_idle(self, bridge):
        """Nothing to abort."""
        assert bridge.abort() is False


class TestTestConnection:
    """Tests for test_connection()."""

    def test_success(self, bridge, registered, model_file, fake_runtime):
        """A tiny real generation reports latency."""
        result = bridge.test_connection()

        assert result["success"] is True
        assert result["model"] == registered.name
        assert result["latency_ms"] >= 0
        assert result["message"].startswith("Model loaded and responding")
        assert fake_runtime.last_params["max_tokens"] == 10
        assert fake_runtime.last_params["temperature"] == 0.1

    def test_missing_model(self, bridge):
        """Without a downloaded file the load fails."""
        result = bridge.test_connection()
        assert result["success"] is False
        assert result["code"] == ErrorCode.MDL_NOT_FOUND.value


class TestModelManagement:
    """Tests for delete/list/config operations."""

    def test_delete_unloads_current(self, bridge, registered, model_file):
        """Deleting the loaded model unloads it."""
        bridge.load_model()

        result = bridge.delete_model()

        assert result == {"success": True, "deleted": True, "model_id": registered.id}
        assert not model_file.exists()
        assert bridge.current_model is None
        assert not bridge.engine.is_model_loaded()

    def test_delete_clears_validation_cache(self, bridge, model_file, model_bytes, fake_server):
        """After a delete the next ensure goes back to the network."""
        bridge.ensure_model()
        bridge.delete_model()

        bridge.ensure_model()

        assert len(fake_server.gets) == 1

    def test_list_models(self, bridge, registered, model_file):
        """Downloaded files are matched to registry entries."""
        models = bridge.list_models()

        assert len(models) == 1
        assert models[0]["id"] == registered.id
        assert models[0]["name"] == registered.name
        assert models[0]["size"] == registered.expected_size

    def test_available_models(self, bridge, registered):
        """The registry is exposed as dicts."""
        ids = [m["id"] for m in bridge.get_available_models()]
        assert registered.id in ids
        assert "qwen:1.5b" in ids

    def test_get_config(self, bridge, registered):
        """Config summary includes memory and the default model."""
        summary = bridge.get_config()
        assert summary["default_model"] == registered.id
        assert summary["current_model"] is None
        assert "total_gb" in summary["memory"]
        assert summary["model_dir"] == str(bridge.downloader.model_dir)

    def test_set_model_persists(self, bridge, registered, config, config_path):
        """A valid choice is saved."""
        config.llm.model_id = "qwen:1.5b"

        result = bridge.set_model(registered.id)

        assert result["valid"] is True
        assert config.llm.model_id == registered.id
        assert json.loads(config_path.read_text())["llm"]["model_id"] == registered.id

    def test_set_model_rejects_small_machine(self, make_bridge):
        """Models needing more RAM than available are refused."""
        bridge = make_bridge(total_ram_gb=1)

        result = bridge.set_model("qwen:1.5b")

        assert result["valid"] is False
        assert result["reason"] == "Insufficient RAM. Required: 3GB, Available: 1GB"

    def test_set_unknown_model(self, bridge):
        """Unknown ids are invalid."""
        assert bridge.set_model("nope:0b")["valid"] is False

    def test_load_model_records_choice(self, bridge, registered, model_file, config, config_path):
        """Loading a different model makes it the default."""
        config.llm.model_id = "qwen:1.5b"

        result = bridge.load_model(registered.id)

        assert result["success"] is True
        assert config.llm.model_id == registered.id
        assert config_path.exists()


class TestLifecycle:
    """Tests for server start and shutdown."""

    def test_start_without_supervisor(self, bridge):
        """No supervisor means no server."""
        result = bridge.start_server()
        assert result["success"] is False
        assert result["code"] == ErrorCode.SVC_START_FAILED.value

    def test_start_server(self, make_bridge):
        """The supervisor handle is returned."""
        supervisor = MagicMock()
        supervisor.start.return_value = ProcessHandle(pid=4242, port=11500)
        supervisor.base_url = "http://127.0.0.1:11500"
        bridge = make_bridge(supervisor=supervisor)

        result = bridge.start_server()

        assert result == {
            "success": True,
            "pid": 4242,
            "port": 11500,
            "ready": True,
            "base_url": "http://127.0.0.1:11500",
        }

    def test_start_server_timeout(self, make_bridge):
        """Startup failures come back as results."""
        supervisor = MagicMock()
        supervisor.start.side_effect = ProcessStartupTimeoutError(timeout_seconds=30)
        bridge = make_bridge(supervisor=supervisor)

        result = bridge.start_server()

        assert result["success"] is False
        assert result["code"] == ErrorCode.SVC_STARTUP_TIMEOUT.value

    def test_shutdown(self, make_bridge, model_file):
        """Shutdown unloads the engine and stops the server."""
        supervisor = MagicMock()
        bridge = make_bridge(supervisor=supervisor)
        bridge.load_model()

        assert bridge.shutdown() == {"success": True}
        assert not bridge.engine.is_model_loaded()
        supervisor.stop.assert_called_once()
