"""Pass 3 — retrospective expansion.

A value found once is almost always repeated through a document, and every
occurrence has to be redacted.  ``find_occurrences`` scans the text for each
known value; ``find_variations`` asks the generative service for aliases,
initials and partial references of known names and addresses.
"""

from __future__ import annotations
import logging
import re
from typing import Iterable

from .llm_client import CompletionClient
from .llm_layer import _GenerativeDetector, findings_to_entities
from .merge import merge_entities
from .types import DetectedEntity, DetectionMethod, PIIType, Span

logger = logging.getLogger(__name__)

VARIATION_TYPES = (PIIType.NAME, PIIType.ADDRESS)
VARIATION_DEFAULT_CONFIDENCE = 0.80

VARIATIONS_PROMPT = """You are reviewing a document in which these entities were already identified:
{known}

Find every VARIATION, ALIAS and PARTIAL REFERENCE to them in the text.

Names: first or last name alone, different titles or honorifics (Mr., Mrs., Dr.),
initials (R. J. Patterson, R. Patterson), nicknames and short forms, misspellings
or OCR errors, possessives (Patterson's).
Addresses: partial addresses (street only, city/state only), abbreviations
(St. for Street, Ave. for Avenue).

Return ONLY a JSON array. Each item:
- type: "NAME" or "ADDRESS"
- value: the exact text as it appears in the document
- startIndex / endIndex: character offsets
- relatedTo: the identified entity this is a variation of
- confidence: 0.0 to 1.0

Example: [{{"type": "NAME", "value": "Mr. Patterson", "startIndex": 500, "endIndex": 513, "relatedTo": "Robert J. Patterson", "confidence": 0.9}}]
If no variations are found, return []"""


def distinct_values(entities: Iterable[DetectedEntity]) -> dict[str, DetectedEntity]:
    """Case-insensitive value key → highest-confidence entity for it."""
    unique: dict[str, DetectedEntity] = {}
    for e in entities:
        key = e.value.lower()
        if not key:
            continue
        if key not in unique or e.confidence > unique[key].confidence:
            unique[key] = e
    return unique


def find_occurrences(text: str, entities: Iterable[DetectedEntity]) -> list[DetectedEntity]:
    """Every case-insensitive occurrence of a known value not yet an entity.

    Overlapping occurrences are all reported; the merge decides between them.
    """
    entities = list(entities)
    known = {(e.span.start, e.span.end) for e in entities}
    additional: list[DetectedEntity] = []

    for entity in distinct_values(entities).values():
        # Lookahead so overlapping occurrences are found too
        needle = re.compile(f"(?=({re.escape(entity.value)}))", re.IGNORECASE)
        for m in needle.finditer(text):
            start, end = m.span(1)
            if end <= start or (start, end) in known:
                continue
            known.add((start, end))
            additional.append(DetectedEntity(
                type=entity.type,
                value=text[start:end],
                span=Span(start, end),
                confidence=entity.confidence,
                detection_method=DetectionMethod.RETROSPECTIVE,
                context=f'Additional occurrence of "{entity.value}"',
                normalized_value=entity.normalized_value,
                related_to=entity.value,
            ))

    logger.debug("retrospective scan: %d additional occurrences", len(additional))
    return additional


class RetrospectiveExpander(_GenerativeDetector):
    """Occurrence scan plus generative alias discovery."""

    name = "variations"

    def __init__(self, client: CompletionClient | None = None) -> None:
        super().__init__(client)

    def find_occurrences(self, text: str, entities: Iterable[DetectedEntity]) -> list[DetectedEntity]:
        return merge_entities(find_occurrences(text, entities))

    def find_variations(self, text: str, entities: Iterable[DetectedEntity]) -> list[DetectedEntity]:
        """Aliases, initials and partial references of known names/addresses."""
        if self.client is None:
            return []
        canonical = [e for e in entities if e.type in VARIATION_TYPES]
        if not canonical:
            return []

        known = self._format_known(canonical)
        system = VARIATIONS_PROMPT.format(known=known)
        user = f"Find all variations of the identified entities in this text:\n\n{text}"
        found = findings_to_entities(
            text,
            self._ask(system, user),
            allowed=VARIATION_TYPES,
            method=DetectionMethod.RETROSPECTIVE,
            default_confidence=VARIATION_DEFAULT_CONFIDENCE,
        )
        for e in found:
            e.context = f'Variation of "{e.related_to}"' if e.related_to else "Variation found by AI analysis"
        merged = merge_entities(found)
        logger.debug("variation pass: %d entities", len(merged))
        return merged

    @staticmethod
    def _format_known(entities: list[DetectedEntity]) -> str:
        lines: list[str] = []
        for pii_type, label in ((PIIType.NAME, "NAMES"), (PIIType.ADDRESS, "ADDRESSES")):
            values = sorted({e.value for e in entities if e.type is pii_type})
            if values:
                lines.append(f"{label}: {', '.join(values)}")
        return "\n".join(lines)
