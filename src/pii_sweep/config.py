"""YAML/dict config loader for pii-sweep.

Supports loading from a YAML file or a plain dict (for embedding in a
larger service config).  Environment variables fill anything left unset.

Example YAML:

    pii_sweep:
      types: [SSN, CREDIT_CARD, NAME, ADDRESS]
      # preset: ssn-financial   # or a named type filter instead of types
      luhn_check: false
      llm:
        model: gpt-4o
        base_url: https://api.example.com/llm/v1
        timeout: 60
      semantic:
        base_url: https://api.example.com/search/v1
        method: hybrid
        top_k: 10
      passes:
        contextual: true
        unstructured: true
        retrospective: true
        variations: true
        semantic: true
      cache:
        backend: sqlite          # "memory" or "sqlite"
        path: ~/.pii-sweep/cache.db
        max_size: 200
      rate_limit:
        limit: 20
        window_seconds: 60
"""

from __future__ import annotations
import logging
import os
from pathlib import Path
from typing import Any

from .cache import DEFAULT_MAX_SIZE, MemorySessionStore, SessionCache, SessionStore
from .cache_sqlite import SqliteSessionStore
from .llm_client import DEFAULT_MODEL, GenerativeClient
from .rate_limit import RateLimiter
from .redactor import Redactor, RedactorConfig
from .semantic_layer import SemanticIndexClient

logger = logging.getLogger(__name__)

DEFAULT_DB = os.environ.get(
    "PII_SWEEP_DB",
    str(Path.home() / ".pii-sweep" / "cache.db"),
)


def load_config(data: dict[str, Any] | None = None) -> dict[str, Any]:
    """Normalize a config dict (from YAML or inline)."""
    data = dict(data or {})
    # Support nested under "pii_sweep" key or flat
    if "pii_sweep" in data:
        data = data["pii_sweep"] or {}

    llm = data.get("llm") or {}
    semantic = data.get("semantic") or {}
    passes = data.get("passes") or {}
    cache = data.get("cache") or {}
    rate = data.get("rate_limit") or {}

    return {
        "types": data.get("types"),
        "preset": data.get("preset"),
        "luhn_check": bool(data.get("luhn_check", False)),
        "max_text_length": int(data.get("max_text_length", 1_000_000)),
        "llm_model": llm.get("model") or os.environ.get("PII_SWEEP_LLM_MODEL", DEFAULT_MODEL),
        "llm_base_url": llm.get("base_url") or os.environ.get("PII_SWEEP_LLM_BASE_URL"),
        "llm_api_key": llm.get("api_key") or os.environ.get("PII_SWEEP_LLM_API_KEY"),
        "llm_timeout": float(llm.get("timeout", 60.0)),
        "llm_max_tokens": int(llm.get("max_tokens", 4096)),
        "semantic_base_url": semantic.get("base_url") or os.environ.get("PII_SWEEP_SEMANTIC_URL"),
        "semantic_api_key": semantic.get("api_key") or os.environ.get("PII_SWEEP_SEMANTIC_API_KEY"),
        "semantic_method": semantic.get("method", "hybrid"),
        "semantic_top_k": int(semantic.get("top_k", 10)),
        "semantic_timeout": float(semantic.get("timeout", 30.0)),
        "use_contextual": bool(passes.get("contextual", True)),
        "use_unstructured": bool(passes.get("unstructured", True)),
        "use_retrospective": bool(passes.get("retrospective", True)),
        "use_variations": bool(passes.get("variations", True)),
        "use_semantic": bool(passes.get("semantic", True)),
        "cache_backend": cache.get("backend", "memory"),
        "cache_path": cache.get("path", DEFAULT_DB),
        "cache_max_size": int(cache.get("max_size", DEFAULT_MAX_SIZE)),
        "rate_limit": int(rate.get("limit", 20)),
        "rate_window_seconds": float(rate.get("window_seconds", 60.0)),
    }


def load_from_yaml(path: str | Path) -> dict[str, Any]:
    """Load config from a YAML file."""
    import yaml
    with open(path) as f:
        return load_config(yaml.safe_load(f) or {})


def _normalized(config: dict[str, Any] | None) -> dict[str, Any]:
    return config if config is not None and "cache_backend" in config else load_config(config)


def redactor_config(config: dict[str, Any]) -> RedactorConfig:
    return RedactorConfig(
        types=config["types"],
        preset=config.get("preset"),
        luhn_check=config["luhn_check"],
        max_text_length=config["max_text_length"],
        llm_model=config["llm_model"],
        llm_base_url=config["llm_base_url"],
        llm_api_key=config["llm_api_key"],
        llm_timeout=config["llm_timeout"],
        llm_max_tokens=config["llm_max_tokens"],
        semantic_base_url=config["semantic_base_url"],
        semantic_api_key=config["semantic_api_key"],
        semantic_method=config["semantic_method"],
        semantic_top_k=config["semantic_top_k"],
        semantic_timeout=config["semantic_timeout"],
        use_contextual=config["use_contextual"],
        use_unstructured=config["use_unstructured"],
        use_retrospective=config["use_retrospective"],
        use_variations=config["use_variations"],
        use_semantic=config["use_semantic"],
    )


def create_redactor(config: dict[str, Any] | None = None) -> Redactor:
    """Create a fully wired Redactor from a config dict.

    Missing credentials disable the matching passes instead of failing.
    """
    cfg = _normalized(config)
    rc = redactor_config(cfg)

    llm = None
    if rc.llm_api_key:
        llm = GenerativeClient(
            api_key=rc.llm_api_key,
            base_url=rc.llm_base_url,
            model=rc.llm_model,
            max_tokens=rc.llm_max_tokens,
            timeout=rc.llm_timeout,
        )
    else:
        logger.info("no generative service key configured, model passes disabled")

    index = None
    if rc.semantic_base_url:
        index = SemanticIndexClient(
            rc.semantic_base_url,
            api_key=rc.semantic_api_key,
            timeout=rc.semantic_timeout,
        )

    return Redactor(rc, llm=llm, semantic_index=index)


def create_store(config: dict[str, Any] | None = None) -> SessionStore:
    cfg = _normalized(config)
    if cfg["cache_backend"] == "sqlite":
        return SqliteSessionStore(db_path=cfg["cache_path"])
    return MemorySessionStore()


def create_cache(
    config: dict[str, Any] | None = None,
    session_id: str = "default",
    store: SessionStore | None = None,
) -> SessionCache:
    """Create a SessionCache on the configured backend."""
    cfg = _normalized(config)
    return SessionCache(
        session_id,
        store if store is not None else create_store(cfg),
        max_size=cfg["cache_max_size"],
    )


def create_rate_limiter(config: dict[str, Any] | None = None) -> RateLimiter:
    cfg = _normalized(config)
    return RateLimiter(cfg["rate_limit"], cfg["rate_window_seconds"])
