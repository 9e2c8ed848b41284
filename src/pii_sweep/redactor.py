"""Redactor, the main API.  Multi-pass: patterns, generative model,
retrospective expansion, then optional semantic search.

Usage:
    from pii_sweep import Redactor, SessionCache

    redactor = Redactor()                 # patterns only, no external calls
    entities = redactor.detect_all("SSN: 123-45-6789")
    print(entities[0].masked_value)       # "***-**-6789"

    cache = SessionCache("session-1")     # one per client session
    plan = redactor.redact("Call 555-234-5678", cache)
    print(plan.apply())                   # "Call (***) ***-5678"
    plan.confirm(cache)                   # after review: remember what was redacted
"""

from __future__ import annotations
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, TYPE_CHECKING

from .errors import InputError
from .llm_client import DEFAULT_MODEL, CompletionClient
from .llm_layer import ContextualDetector, UnstructuredDetector
from .masking import mask_entity
from .merge import merge_passes
from .patterns import PatternMatcher, preset_types
from .retrospective import RetrospectiveExpander
from .semantic_layer import SemanticIndexClient, SemanticSearchExtractor
from .types import DetectedEntity, DocumentContext, PIIType, RedactionPlan, parse_types

if TYPE_CHECKING:
    from .cache import SessionCache

logger = logging.getLogger(__name__)

PAGE_BREAK = "\f"


@dataclass
class RedactorConfig:
    """Configuration for the Redactor."""
    types: list[str] | None = None        # None = every type
    preset: str | None = None             # named type filter, used when types is None
    luhn_check: bool = False
    max_text_length: int = 1_000_000
    # Generative service
    llm_model: str = DEFAULT_MODEL
    llm_base_url: str | None = None
    llm_api_key: str | None = None
    llm_timeout: float = 60.0
    llm_max_tokens: int = 4096
    # Semantic index
    semantic_base_url: str | None = None
    semantic_api_key: str | None = None
    semantic_method: str = "hybrid"
    semantic_top_k: int = 10
    semantic_timeout: float = 30.0
    # Pass toggles
    use_contextual: bool = True
    use_unstructured: bool = True
    use_retrospective: bool = True
    use_variations: bool = True
    use_semantic: bool = True


class Redactor:
    """Multi-pass PII detector.

    Pass 1: Pattern matching (SSNs, cards, accounts, phones, emails, dates)
    Pass 2: Generative model, contextual + unstructured, run concurrently
    Pass 3: Retrospective occurrence scan + alias discovery
    Pass 4: Semantic index extraction (only with a document context)

    Every pass after the first may fail; a failed pass only costs recall.
    """

    def __init__(
        self,
        config: RedactorConfig | None = None,
        *,
        llm: CompletionClient | None = None,
        semantic_index: SemanticIndexClient | None = None,
        matcher: PatternMatcher | None = None,
    ) -> None:
        self.config = config or RedactorConfig()
        self.llm = llm
        self.default_types = resolve_types(self.config.types, self.config.preset)
        self.matcher = matcher or PatternMatcher(luhn_check=self.config.luhn_check)
        self.contextual = ContextualDetector(llm if self.config.use_contextual else None)
        self.unstructured = UnstructuredDetector(llm if self.config.use_unstructured else None)
        self.expander = RetrospectiveExpander(llm if self.config.use_variations else None)
        self.semantic = SemanticSearchExtractor(
            semantic_index if self.config.use_semantic else None,
            self.matcher,
            method=self.config.semantic_method,
            top_k=self.config.semantic_top_k,
        )

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_all(
        self,
        text: str,
        types: Iterable[PIIType | str] | None = None,
        document_context: DocumentContext | None = None,
    ) -> list[DetectedEntity]:
        """Run every pass and return a disjoint, masked entity list."""
        self._validate(text)
        wanted = parse_types(types if types is not None else self.default_types)

        # --- Pass 1: patterns (infallible) ---
        found_a = self.matcher.detect(text, wanted)

        # --- Pass 2: contextual + unstructured, concurrently ---
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="pii-sweep") as pool:
            contextual = pool.submit(
                self._run_pass, "contextual", self.contextual.detect, text, found_a, wanted)
            unstructured = pool.submit(
                self._run_pass, "unstructured", self.unstructured.detect, text, found_a, wanted)
            found_b = merge_passes(found_a, contextual.result(), unstructured.result())

        # --- Pass 3: retrospective ---
        found_c = found_b
        if self.config.use_retrospective:
            occurrences = self._run_pass("occurrences", self.expander.find_occurrences, text, found_b)
            variations = self._run_pass("variations", self.expander.find_variations, text, found_b)
            found_c = merge_passes(found_b, occurrences, variations)

        # --- Pass 4: semantic (optional) ---
        semantic: list[DetectedEntity] = []
        if document_context is not None:
            semantic = self._run_pass("semantic", self.semantic.extract, text, document_context, wanted)
        final = merge_passes(found_c, semantic)

        for entity in final:
            entity.span.check(text)
            entity.masked_value = mask_entity(entity.type, entity.normalized_value or entity.value)
            entity.page_number = text.count(PAGE_BREAK, 0, entity.span.start) + 1

        logger.info("detected %d entities in %d characters", len(final), len(text))
        return final

    def redact(
        self,
        text: str,
        cache: SessionCache | None = None,
        types: Iterable[PIIType | str] | None = None,
        document_context: DocumentContext | None = None,
    ) -> RedactionPlan:
        """Detect, mask, and cross-reference the session cache.

        The cache is only read here.  Once a reviewer has settled which
        entities to redact, ``plan.confirm(cache)`` records them.
        """
        entities = self.detect_all(text, types, document_context)
        cached_matches = cache.find_cached_matches(text) if cache is not None else []
        return RedactionPlan(text=text, entities=entities, cached_matches=cached_matches)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate(self, text: object) -> None:
        if not isinstance(text, str):
            raise InputError(f"text must be a string, got {type(text).__name__}")
        if not text.strip():
            raise InputError("text is required")
        if len(text) > self.config.max_text_length:
            raise InputError(
                f"text exceeds maximum length of {self.config.max_text_length} characters"
            )

    @staticmethod
    def _run_pass(name: str, fn: Callable[..., list[DetectedEntity]], *args) -> list[DetectedEntity]:
        """Pass boundary: an enhancement pass never fails detection."""
        try:
            return fn(*args)
        except Exception:
            logger.exception("%s pass failed, continuing without it", name)
            return []


def resolve_types(
    types: Iterable[PIIType | str] | None = None,
    preset: str | None = None,
) -> Iterable[PIIType | str] | None:
    """An explicit type list wins over a preset; neither means every type."""
    if types is not None:
        return types
    if preset:
        return preset_types(preset)
    return None


def detect_all(
    text: str,
    types: Iterable[PIIType | str] | None = None,
    document_context: DocumentContext | None = None,
) -> list[DetectedEntity]:
    """Pattern + retrospective detection with a default, offline Redactor."""
    return Redactor().detect_all(text, types, document_context)
