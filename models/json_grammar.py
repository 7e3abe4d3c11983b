"""Schema-constrained JSON generation support.

Compiled grammars are expensive to build, so they are cached per canonical
JSON Schema. The compile step is supplied by the runtime backend
(``llama_cpp.LlamaGrammar.from_json_schema`` for the default backend).
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


def schema_key(schema: dict[str, Any]) -> str:
    """Canonical cache key: key order and whitespace do not matter."""
    return json.dumps(schema, sort_keys=True, separators=(",", ":"))


class GrammarCache:
    """Lazily compiles and caches grammars for JSON schemas.

    Example:
        cache = GrammarCache(runtime.compile_grammar)
        grammar = cache.get({"type": "object", "properties": {...}})
    """

    def __init__(self, compile_fn: Callable[[dict[str, Any]], Any]) -> None:
        self._compile = compile_fn
        self._grammars: dict[str, Any] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, schema: dict[str, Any]) -> Any:
        key = schema_key(schema)
        with self._lock:
            grammar = self._grammars.get(key)
            if grammar is not None:
                self.hits += 1
                return grammar

            self.misses += 1
            logger.debug("Compiling grammar for schema (%d chars)", len(key))
            grammar = self._compile(schema)
            self._grammars[key] = grammar
            return grammar

    def clear(self) -> None:
        with self._lock:
            self._grammars.clear()

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {"size": len(self._grammars), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        with self._lock:
            return len(self._grammars)
