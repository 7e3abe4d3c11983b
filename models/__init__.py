"""Model artifacts, registry and inference engine.

Model Registry:
    from models import get_model_spec, validate_model_requirements

    spec = get_model_spec("qwen:1.5b")
    check = validate_model_requirements(spec)

Download and load:
    from models import ArtifactDownloader, InferenceEngine

    path = ArtifactDownloader(get_model_dir()).acquire(spec)
    engine = InferenceEngine()
    engine.load_model(path)
"""

from models.downloader import ArtifactDownloader, compute_sha256, validate_artifact
from models.fetcher import BinaryFetcher, BinaryVerification
from models.json_grammar import GrammarCache
from models.loader import InferenceEngine, LlamaCppRuntime, get_engine, reset_engine
from models.registry import (
    DEFAULT_MODEL_ID,
    MODEL_REGISTRY,
    get_all_models,
    get_memory_info,
    get_model_spec,
    get_model_spec_by_filename,
    validate_model_requirements,
)
from models.schemas import JSON_SCHEMAS, assemble_artifact, assemble_level_intro

__all__ = [
    # Registry
    "DEFAULT_MODEL_ID",
    "MODEL_REGISTRY",
    "get_all_models",
    "get_memory_info",
    "get_model_spec",
    "get_model_spec_by_filename",
    "validate_model_requirements",
    # Artifacts
    "ArtifactDownloader",
    "BinaryFetcher",
    "BinaryVerification",
    "compute_sha256",
    "validate_artifact",
    # Engine
    "GrammarCache",
    "InferenceEngine",
    "LlamaCppRuntime",
    "get_engine",
    "reset_engine",
    # Schemas
    "JSON_SCHEMAS",
    "assemble_artifact",
    "assemble_level_intro",
]
