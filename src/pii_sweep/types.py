"""Core types."""

from __future__ import annotations
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TYPE_CHECKING

from .errors import InputError

if TYPE_CHECKING:
    from .cache import SessionCache


class PIIType(str, Enum):
    """Closed set of entity types the engine knows how to find and mask."""
    SSN = "SSN"
    ACCOUNT_NUMBER = "ACCOUNT_NUMBER"
    CREDIT_CARD = "CREDIT_CARD"
    NAME = "NAME"
    ADDRESS = "ADDRESS"
    PHONE = "PHONE"
    EMAIL = "EMAIL"
    DOB = "DOB"
    CUSTOM = "CUSTOM"

    @classmethod
    def parse(cls, value: str | PIIType) -> PIIType:
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            raise InputError(f"unknown PII type: {value!r}") from None


class DetectionMethod(str, Enum):
    PATTERN = "pattern"
    CONTEXTUAL = "contextual"
    UNSTRUCTURED = "unstructured"
    RETROSPECTIVE = "retrospective"
    SEMANTIC = "semantic"


def parse_types(types: Any) -> frozenset[PIIType] | None:
    """Normalize a type filter.  None means every type."""
    if types is None:
        return None
    if isinstance(types, (str, PIIType)):
        types = [types]
    elif not isinstance(types, (list, tuple, set, frozenset)):
        raise InputError(f"types must be a list of type names, got {type(types).__name__}")
    return frozenset(PIIType.parse(t) for t in types)


@dataclass(frozen=True, slots=True)
class Span:
    """Half-open character range [start, end) into one text buffer."""
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.start >= self.end:
            raise ValueError(f"invalid span [{self.start}, {self.end})")

    def check(self, text: str) -> Span:
        if self.end > len(text):
            raise ValueError(f"span [{self.start}, {self.end}) exceeds text length {len(text)}")
        return self

    def overlaps(self, other: Span) -> bool:
        return self.start < other.end and other.start < self.end

    def __len__(self) -> int:
        return self.end - self.start


@dataclass(slots=True)
class DetectedEntity:
    """A single detected PII entity.

    ``should_redact`` and ``masked_value`` belong to the reviewer: they can be
    changed after detection without touching the span.
    """
    type: PIIType
    value: str                                  # verbatim text[start:end]
    span: Span
    confidence: float                           # tie-break prior, not a probability
    detection_method: DetectionMethod
    context: str = ""
    normalized_value: str | None = None
    masked_value: str = ""
    should_redact: bool = True
    page_number: int = 1
    related_to: str | None = None               # canonical value for variations
    id: str = field(default_factory=lambda: f"entity-{uuid.uuid4().hex}")

    @property
    def start(self) -> int:
        return self.span.start

    @property
    def end(self) -> int:
        return self.span.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "value": self.value,
            "normalizedValue": self.normalized_value,
            "maskedValue": self.masked_value,
            "startIndex": self.span.start,
            "endIndex": self.span.end,
            "confidence": self.confidence,
            "detectionMethod": self.detection_method.value,
            "context": self.context,
            "shouldRedact": self.should_redact,
            "pageNumber": self.page_number,
            "relatedTo": self.related_to,
        }


@dataclass(slots=True)
class CachedRedaction:
    """Hash-only record of a confirmed redaction.  Never holds the raw value."""
    id: str
    value_hash: str
    masked_value: str
    type: PIIType
    created_at: str                             # ISO 8601
    usage_count: int
    value_length: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "valueHash": self.value_hash,
            "maskedValue": self.masked_value,
            "type": self.type.value,
            "createdAt": self.created_at,
            "usageCount": self.usage_count,
            "valueLength": self.value_length,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CachedRedaction:
        return cls(
            id=data["id"],
            value_hash=data["valueHash"],
            masked_value=data["maskedValue"],
            type=PIIType.parse(data["type"]),
            created_at=data["createdAt"],
            usage_count=int(data["usageCount"]),
            value_length=int(data["valueLength"]),
        )


@dataclass(frozen=True, slots=True)
class CachedMatch:
    """A span of text whose signature matches a cached redaction."""
    cached: CachedRedaction
    span: Span


@dataclass(frozen=True, slots=True)
class DocumentContext:
    """Scope for the semantic search pass."""
    index_id: str
    document_id: str


@dataclass(slots=True)
class RedactionPlan:
    """Result of redacting a document: entities plus cache hits."""
    text: str
    entities: list[DetectedEntity] = field(default_factory=list)
    cached_matches: list[CachedMatch] = field(default_factory=list)

    def apply(self) -> str:
        """Return the text with every selected span replaced by its mask."""
        replacements: list[tuple[Span, str]] = [
            (e.span, e.masked_value) for e in self.entities if e.should_redact
        ]
        for m in self.cached_matches:
            if not any(m.span.overlaps(e.span) for e in self.entities):
                replacements.append((m.span, m.cached.masked_value))

        # Right-to-left to preserve offsets
        result = self.text
        for span, masked in sorted(replacements, key=lambda r: r[0].start, reverse=True):
            result = result[:span.start] + masked + result[span.end:]
        return result

    def confirm(self, cache: SessionCache) -> int:
        """Record the reviewed selection in the session cache.

        Only entities still marked ``should_redact`` are cached.  Returns how
        many were recorded.
        """
        selected = [e for e in self.entities if e.should_redact]
        if selected:
            cache.add_many((e.value, e.masked_value, e.type) for e in selected)
        return len(selected)
