"""delve Configuration System.

Loads and validates configuration from ~/.delve/config.json.
Uses Pydantic for schema validation with sensible defaults.

Supports migration from older config versions while preserving existing values.

Usage:
    from delve.config import get_config, save_config

    config = get_config()
    print(config.llm.context_size)
    print(config.llm.temperature.resolve("artifact"))

    # Modify and save
    config.llm.gpu = False
    save_config(config)
"""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".delve"
CONFIG_PATH = DEFAULT_DATA_DIR / "config.json"

# Current config schema version for migration tracking
CONFIG_VERSION = 2

DEFAULT_TEMPERATURE = 0.7

LEVEL_INTRO_PROMPT = (
    "You are the narrator of a dark fantasy dungeon crawler. When the player enters a "
    "new level, describe it in second person, present tense. Reply only with JSON that "
    "has the fields room, threat and oddity. room is the environment with one sensory "
    "detail, threat is how the enemies behave (never how many there are), oddity is one "
    "uncanny detail. Each field is a single sentence."
)

ARTIFACT_PROMPT = (
    "You are the narrator of a dark fantasy dungeon crawler. When the player finds an "
    "artifact, describe it. Reply only with JSON that has the fields title, placement "
    "and effect. title is the exact artifact name you were given, placement says where "
    "it rests and how it touches the chamber, effect hints at its power. Each field is a "
    "single sentence."
)


class ScalarTemperature(BaseModel):
    """A single temperature used for every mode (legacy bare-number form)."""

    kind: Literal["scalar"] = "scalar"
    value: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)

    def resolve(self, mode: str | None) -> float:
        return self.value


class PerModeTemperature(BaseModel):
    """Temperature looked up per generation mode, with a default fallback.

    Attributes:
        default: Temperature for modes without an entry (and for no mode).
        modes: Mapping of mode name to temperature.
    """

    kind: Literal["per_mode"] = "per_mode"
    default: float = Field(default=DEFAULT_TEMPERATURE, ge=0.0, le=2.0)
    modes: dict[str, float] = Field(default_factory=dict)

    def resolve(self, mode: str | None) -> float:
        if mode is not None and mode in self.modes:
            return self.modes[mode]
        return self.default


TemperatureSetting = Annotated[
    ScalarTemperature | PerModeTemperature,
    Field(discriminator="kind"),
]


def coerce_temperature(value: Any) -> Any:
    """Turn the loose on-disk temperature forms into the tagged representation.

    A bare number becomes ``{"kind": "scalar"}``. A mapping without ``kind``
    is read as ``{"default": x, "<mode>": y, ...}`` and becomes
    ``{"kind": "per_mode"}``. Anything already tagged passes through.
    """
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return {"kind": "scalar", "value": float(value)}
    if isinstance(value, dict) and "kind" not in value:
        modes = {k: v for k, v in value.items() if k != "default"}
        return {
            "kind": "per_mode",
            "default": value.get("default", DEFAULT_TEMPERATURE),
            "modes": modes,
        }
    return value


class ModeProfile(BaseModel):
    """A named generation profile.

    Attributes:
        system_prompt: System prompt installed in the chat session for this mode.
        description: Short human-readable description.
    """

    system_prompt: str
    description: str = ""


def _default_modes() -> dict[str, ModeProfile]:
    return {
        "levelIntro": ModeProfile(
            system_prompt=LEVEL_INTRO_PROMPT,
            description="Three-slot description of a newly entered level",
        ),
        "artifact": ModeProfile(
            system_prompt=ARTIFACT_PROMPT,
            description="Three-slot description of a found artifact",
        ),
    }


class LLMSettings(BaseModel):
    """Inference engine configuration.

    Attributes:
        model_id: Default model identifier from the registry.
        enabled: Whether local generation is enabled at all.
        gpu: Offload all layers to the GPU when True.
        context_size: Decode context window in tokens.
        batch_size: Prompt processing batch size.
        threads: CPU threads used by the runtime.
        max_tokens: Default maximum tokens per generation.
        top_p: Default nucleus sampling threshold.
        top_k: Default top-k sampling limit.
        repeat_penalty: Default repetition penalty.
        temperature: Scalar or per-mode temperature, resolved at load time.
        modes: Generation modes keyed by name.
    """

    model_id: str = "qwen:1.5b"
    enabled: bool = True
    gpu: bool = True
    context_size: int = Field(default=8192, ge=256, le=131072)
    batch_size: int = Field(default=512, ge=1, le=8192)
    threads: int = Field(default=4, ge=1, le=256)
    max_tokens: int = Field(default=500, ge=1, le=8192)
    top_p: float = Field(default=0.95, ge=0.0, le=1.0)
    top_k: int = Field(default=40, ge=1)
    repeat_penalty: float = Field(default=1.1, ge=1.0, le=2.0)
    temperature: TemperatureSetting = Field(default_factory=ScalarTemperature)
    modes: dict[str, ModeProfile] = Field(default_factory=_default_modes)

    @field_validator("temperature", mode="before")
    @classmethod
    def _tag_temperature(cls, value: Any) -> Any:
        return coerce_temperature(value)


class DownloadSettings(BaseModel):
    """Artifact download configuration.

    Attributes:
        probe_timeout: Timeout in seconds for redirect and size probes.
        transfer_timeout: Read timeout in seconds for the full transfer.
        max_redirects: Redirect hops followed before giving up.
        max_retries: Transfer attempts per acquire when the connection drops.
        chunk_size: Bytes read from the response per iteration.
        user_agent: User-Agent header sent with every request.
    """

    probe_timeout: float = Field(default=10.0, ge=1.0, le=120.0)
    transfer_timeout: float = Field(default=3600.0, ge=10.0, le=86400.0)
    max_redirects: int = Field(default=5, ge=0, le=20)
    max_retries: int = Field(default=3, ge=1, le=10)
    chunk_size: int = Field(default=64 * 1024, ge=1024)
    user_agent: str = "delve-downloader/1.0"


class FetcherSettings(BaseModel):
    """Runtime binary download configuration."""

    version: str = "v0.1.42"
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout: float = Field(default=60.0, ge=1.0, le=600.0)
    min_binary_bytes: int = Field(default=1024 * 1024, ge=1)


class SupervisorSettings(BaseModel):
    """Supervised inference server configuration.

    Attributes:
        default_port: First port tried when allocating a local port.
        port_search_range: Number of consecutive ports probed.
        host_env_var: Environment variable that tells the server its host:port.
        args: Arguments passed to the server binary.
        health_path: Path polled for readiness (200 means ready).
        health_poll_interval: Seconds between readiness polls during startup.
        startup_timeout: Seconds allowed for the server to become ready.
        health_check_interval: Seconds between periodic health checks once ready.
        health_check_timeout: Timeout in seconds for a single health request.
        stop_timeout: Seconds to wait after SIGTERM before SIGKILL.
    """

    default_port: int = Field(default=11434, ge=1024, le=65535)
    port_search_range: int = Field(default=100, ge=1, le=1000)
    host_env_var: str = "OLLAMA_HOST"
    args: list[str] = Field(default_factory=lambda: ["serve"])
    health_path: str = "/api/version"
    health_poll_interval: float = Field(default=0.5, gt=0.0, le=10.0)
    startup_timeout: float = Field(default=30.0, ge=1.0, le=600.0)
    health_check_interval: float = Field(default=30.0, ge=1.0, le=3600.0)
    health_check_timeout: float = Field(default=5.0, ge=0.1, le=60.0)
    stop_timeout: float = Field(default=5.0, ge=0.1, le=120.0)


class DelveConfig(BaseModel):
    """delve configuration schema.

    Attributes:
        config_version: Schema version for migration tracking.
        data_dir: Per-user data directory (None = ~/.delve).
        llm: Inference engine configuration.
        download: Artifact download configuration.
        fetcher: Runtime binary download configuration.
        supervisor: Supervised inference server configuration.
    """

    config_version: int = CONFIG_VERSION
    data_dir: str | None = None
    llm: LLMSettings = Field(default_factory=LLMSettings)
    download: DownloadSettings = Field(default_factory=DownloadSettings)
    fetcher: FetcherSettings = Field(default_factory=FetcherSettings)
    supervisor: SupervisorSettings = Field(default_factory=SupervisorSettings)


# Module-level singleton with thread safety
_config: DelveConfig | None = None
_config_lock = threading.Lock()

# Keys written by the first release, which mirrored the UI's camelCase settings
_LEGACY_LLM_KEYS = {
    "model": "model_id",
    "contextSize": "context_size",
    "batchSize": "batch_size",
    "maxTokens": "max_tokens",
    "topP": "top_p",
    "topK": "top_k",
    "repeatPenalty": "repeat_penalty",
}


def _migrate_v1_to_v2(data: dict[str, Any]) -> dict[str, Any]:
    """Migrate from v1 to v2: snake_case llm keys, tagged temperature, new sections."""
    llm = data.setdefault("llm", {})
    for old_key, new_key in _LEGACY_LLM_KEYS.items():
        if old_key in llm:
            value = llm.pop(old_key)
            llm.setdefault(new_key, value)

    if "temperature" in llm:
        llm["temperature"] = coerce_temperature(llm["temperature"])

    for section in ("download", "fetcher", "supervisor"):
        if section not in data:
            data[section] = {}

    return data


# Migration registry mapping target versions to migration functions
_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {
    2: _migrate_v1_to_v2,
}


def _migrate_config(data: dict[str, Any]) -> dict[str, Any]:
    """Migrate config data from older versions to current schema.

    Preserves existing values while adding new defaults for missing fields.

    Args:
        data: Raw config data loaded from file.

    Returns:
        Migrated config data compatible with current schema.
    """
    version = data.get("config_version", 1)

    for target_version in sorted(_MIGRATIONS.keys()):
        if version < target_version:
            logger.info("Migrating config from version %s to %s", version, target_version)
            data = _MIGRATIONS[target_version](data)
            version = target_version

    data["config_version"] = CONFIG_VERSION

    return data


def load_config(config_path: Path | None = None) -> DelveConfig:
    """Load configuration from file, return defaults if missing/invalid.

    Automatically migrates older config versions while preserving existing values.
    If migration occurs, the updated config is saved back to disk.

    Args:
        config_path: Optional path to config file. Defaults to ~/.delve/config.json.

    Returns:
        DelveConfig instance with loaded or default values.
    """
    path = config_path or CONFIG_PATH

    if not path.exists():
        logger.debug("Config file not found at %s, using defaults", path)
        return DelveConfig()

    try:
        with path.open() as f:
            data: dict[str, Any] = json.load(f)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON in config file %s: %s, using defaults", path, e)
        return DelveConfig()
    except OSError as e:
        logger.warning("Cannot read config file %s: %s, using defaults", path, e)
        return DelveConfig()

    original_version = data.get("config_version", 1)
    data = _migrate_config(data)

    try:
        config = DelveConfig.model_validate(data)

        # Persist migrated config so migration doesn't run on every startup
        if original_version < CONFIG_VERSION:
            logger.info(
                "Persisting migrated config (v%s -> v%s)", original_version, CONFIG_VERSION
            )
            save_config(config, path)

        return config
    except ValidationError as e:
        logger.warning("Config validation failed: %s, using defaults", e)
        return DelveConfig()


def save_config(config: DelveConfig, config_path: Path | None = None) -> bool:
    """Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to config file. Defaults to ~/.delve/config.json.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or CONFIG_PATH

    try:
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            json.dump(config.model_dump(), f, indent=2)

        os.chmod(path, 0o600)

        logger.debug("Configuration saved to %s", path)
        return True

    except OSError as e:
        logger.error("Failed to save config to %s: %s", path, e)
        return False


def get_config() -> DelveConfig:
    """Get singleton configuration instance.

    Uses double-check locking for thread safety.

    Returns:
        Shared DelveConfig instance.
    """
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_config()
    return _config


def reset_config() -> None:
    """Reset singleton configuration for testing."""
    global _config
    with _config_lock:
        _config = None


# =============================================================================
# Data Paths
# =============================================================================


def get_data_dir(config: DelveConfig | None = None) -> Path:
    """Return the per-user data directory."""
    config = config or get_config()
    if config.data_dir:
        return Path(config.data_dir).expanduser()
    return DEFAULT_DATA_DIR


def get_model_dir(config: DelveConfig | None = None) -> Path:
    """Get the directory holding downloaded model artifacts.

    Returns:
        ``<data_dir>/models/qwen2.5/main``
    """
    return get_data_dir(config) / "models" / "qwen2.5" / "main"


def get_binary_dir(config: DelveConfig | None = None) -> Path:
    """Get the directory holding downloaded runtime binaries."""
    return get_data_dir(config) / "bin"
