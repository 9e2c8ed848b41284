"""pii-sweep — multi-pass PII detection and masking for document review."""

from .redactor import Redactor, RedactorConfig, detect_all, resolve_types
from .cache import SessionCache, MemorySessionStore, signature
from .cache_sqlite import SqliteSessionStore
from .masking import mask_entity
from .merge import merge_entities
from .patterns import PRESETS, preset_types
from .rate_limit import RateLimiter
from .config import create_cache, create_redactor, load_config, load_from_yaml
from .errors import (
    CacheFormatError, ExternalServiceError, InputError, ParseError, PIISweepError, RateLimitExceeded,
)
from .types import (
    CachedMatch, CachedRedaction, DetectedEntity, DetectionMethod, DocumentContext, PIIType,
    RedactionPlan, Span,
)

__all__ = [
    "Redactor", "RedactorConfig", "detect_all", "resolve_types", "PRESETS", "preset_types",
    "SessionCache", "MemorySessionStore", "SqliteSessionStore", "signature",
    "mask_entity", "merge_entities", "RateLimiter",
    "create_cache", "create_redactor", "load_config", "load_from_yaml",
    "PIISweepError", "InputError", "ExternalServiceError", "ParseError",
    "CacheFormatError", "RateLimitExceeded",
    "PIIType", "DetectionMethod", "Span", "DetectedEntity", "CachedRedaction",
    "CachedMatch", "DocumentContext", "RedactionPlan",
]
__version__ = "0.1.0"
