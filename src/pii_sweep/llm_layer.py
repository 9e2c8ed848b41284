"""Pass 2 — generative-model detection.

ContextualDetector looks for structured PII written in non-standard ways
(spelled-out digits, odd separators, value-before-label phrasing).
UnstructuredDetector looks for names and addresses.  Each makes exactly one
call to the generative service and degrades to an empty result on any
service or parse failure.
"""

from __future__ import annotations
import json
import logging
from typing import Iterable

from .errors import ExternalServiceError, ParseError
from .llm_client import CompletionClient, Finding, anchor, parse_findings
from .merge import merge_entities
from .types import DetectedEntity, DetectionMethod, PIIType, Span, parse_types

logger = logging.getLogger(__name__)

CONTEXTUAL_TYPES = (
    PIIType.SSN, PIIType.ACCOUNT_NUMBER, PIIType.CREDIT_CARD, PIIType.PHONE, PIIType.DOB,
)
UNSTRUCTURED_TYPES = (PIIType.NAME, PIIType.ADDRESS)

CONTEXTUAL_CONFIDENCE = 0.75
UNSTRUCTURED_DEFAULT_CONFIDENCE = 0.85

CONTEXTUAL_PROMPT = """You find sensitive personal data that pattern matching missed.
Flag anything that might be sensitive; a reviewer will discard false positives.

Look in both directions:
- label before value: "my social is one two three four five six seven eight nine"
- value before label: "five one two three four five six seven eight nine is my social",
  "555-123-4567 is my phone", "12345678 are my account digits"

Also look for:
- digits written as words, or mixed words and digits
- unusual separators ("123.45.6789" for an SSN)
- OCR slips ("l23-45-6789" where l means 1)
- values split across lines or sentences
- dates in natural language ("born on the fifteenth of January, nineteen eighty-five")

Types to report: {types}

Already detected, do NOT re-report:
{already_found}

Return ONLY a JSON array. Each item:
- type: one of {types}
- value: the exact text as it appears in the document
- normalizedValue: the standard form (e.g. "512-34-5678")
- startIndex / endIndex: character offsets (estimate if needed)
- context: short reason, say if the label follows the value

Example: [{{"type": "SSN", "value": "five one two three four five six seven eight nine", "normalizedValue": "512-34-5678", "startIndex": 45, "endIndex": 94, "context": "SSN spelled out, label follows the value"}}]
If nothing new is found, return []"""

UNSTRUCTURED_PROMPT = """You find names and addresses of real people in documents.
Flag anything that might identify a person or place; a reviewer will discard false positives.

Names: full names, first or last names that identify someone, names with titles,
signatures, To/From/Attn/CC fields, salutations and sign-offs, parties, witnesses,
notaries and attorneys.
Addresses: street addresses, PO boxes, suite or unit numbers, city/state/ZIP
combinations, ZIP codes, international addresses, building names.

Types to report: {types}

Already detected, do NOT re-report:
{already_found}

Return ONLY a JSON array. Each item:
- type: one of {types}
- value: the exact text as it appears
- startIndex / endIndex: character offsets (estimate if needed)
- confidence: 0.0 to 1.0

Example: [{{"type": "NAME", "value": "John Smith", "startIndex": 45, "endIndex": 55, "confidence": 0.95}}]
If nothing is found, return []"""


def format_already_found(entities: Iterable[DetectedEntity]) -> str:
    lines: list[str] = []
    seen: set[tuple[PIIType, str]] = set()
    for e in entities:
        key = (e.type, e.value)
        if key in seen:
            continue
        seen.add(key)
        lines.append(f"- {e.type.value}: {json.dumps(e.value)}")
    return "\n".join(lines) if lines else "None"


def findings_to_entities(
    text: str,
    findings: Iterable[Finding],
    *,
    allowed: Iterable[PIIType],
    method: DetectionMethod,
    default_confidence: float,
    fixed_confidence: bool = False,
    default_context: str = "",
) -> list[DetectedEntity]:
    """Anchor findings in the text and turn them into entities.

    Findings whose value cannot be found in the text are dropped.
    """
    allowed = set(allowed)
    entities: list[DetectedEntity] = []
    for f in findings:
        if f.type not in allowed:
            continue
        located = anchor(text, f.value, f.start)
        if located is None:
            logger.debug("dropping unanchored %s finding", f.type.value)
            continue
        start, end = located
        if fixed_confidence or f.confidence is None:
            confidence = default_confidence
        else:
            confidence = f.confidence
        entities.append(DetectedEntity(
            type=f.type,
            value=text[start:end],
            span=Span(start, end),
            confidence=confidence,
            detection_method=method,
            context=f.context or default_context,
            normalized_value=f.normalized_value,
            related_to=f.related_to,
        ))
    return entities


def _requested(types: Iterable[PIIType | str] | None, supported: tuple[PIIType, ...]) -> list[PIIType]:
    wanted = parse_types(types)
    return [t for t in supported if wanted is None or t in wanted]


class _GenerativeDetector:
    """Shared call-and-parse logic for the generative passes."""

    name = "generative"
    supported: tuple[PIIType, ...] = ()

    def __init__(self, client: CompletionClient | None) -> None:
        self.client = client

    def _ask(self, system: str, user: str) -> list[Finding]:
        try:
            return parse_findings(self.client.complete(system, user))
        except ExternalServiceError as e:
            logger.warning("%s pass skipped: %s", self.name, e)
        except ParseError as e:
            logger.warning("%s pass returned unreadable output: %s", self.name, e)
        return []


class ContextualDetector(_GenerativeDetector):
    """Non-standard representations of structured types.  Fixed confidence."""

    name = "contextual"
    supported = CONTEXTUAL_TYPES

    def detect(
        self,
        text: str,
        already_found: Iterable[DetectedEntity] = (),
        types: Iterable[PIIType | str] | None = None,
    ) -> list[DetectedEntity]:
        requested = _requested(types, self.supported)
        if self.client is None or not requested or not text:
            return []

        type_names = ", ".join(t.value for t in requested)
        system = CONTEXTUAL_PROMPT.format(
            types=type_names,
            already_found=format_already_found(already_found),
        )
        user = f"Find non-standard PII representations in this text. Focus on: {type_names}\n\nText:\n{text}"
        entities = findings_to_entities(
            text,
            self._ask(system, user),
            allowed=requested,
            method=DetectionMethod.CONTEXTUAL,
            default_confidence=CONTEXTUAL_CONFIDENCE,
            fixed_confidence=True,
            default_context="Non-standard representation detected by AI analysis",
        )
        merged = merge_entities(entities)
        logger.debug("contextual pass: %d entities", len(merged))
        return merged


class UnstructuredDetector(_GenerativeDetector):
    """Names and addresses, with model-reported confidence."""

    name = "unstructured"
    supported = UNSTRUCTURED_TYPES

    def detect(
        self,
        text: str,
        already_found: Iterable[DetectedEntity] = (),
        types: Iterable[PIIType | str] | None = None,
    ) -> list[DetectedEntity]:
        requested = _requested(types, self.supported)
        if self.client is None or not requested or not text:
            return []

        type_names = ", ".join(t.value for t in requested)
        system = UNSTRUCTURED_PROMPT.format(
            types=type_names,
            already_found=format_already_found(already_found),
        )
        wanted = " and ".join("names" if t is PIIType.NAME else "addresses" for t in requested)
        user = f"Find {wanted} in this text:\n\n{text}"
        entities = findings_to_entities(
            text,
            self._ask(system, user),
            allowed=requested,
            method=DetectionMethod.UNSTRUCTURED,
            default_confidence=UNSTRUCTURED_DEFAULT_CONFIDENCE,
            default_context="Detected by AI analysis",
        )
        merged = merge_entities(entities)
        logger.debug("unstructured pass: %d entities", len(merged))
        return merged
