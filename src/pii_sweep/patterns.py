"""Pass 1 — deterministic pattern matching for structured PII.

One presidio ``PatternRecognizer`` per type, each with a validator that can
veto a regex hit (bad SSN area codes, impossible dates, failed Luhn check).
Confidence is a fixed prior per pattern family, used only for tie-breaking.
"""

from __future__ import annotations
import datetime
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable

from presidio_analyzer import Pattern, PatternRecognizer

from .errors import InputError
from .merge import merge_entities
from .types import DetectedEntity, DetectionMethod, PIIType, Span, parse_types

logger = logging.getLogger(__name__)

BASE_CONFIDENCE: dict[PIIType, float] = {
    PIIType.SSN: 0.95,
    PIIType.CREDIT_CARD: 0.95,
    PIIType.ACCOUNT_NUMBER: 0.80,   # most ambiguous family
    PIIType.PHONE: 0.85,
    PIIType.EMAIL: 0.95,
    PIIType.DOB: 0.70,
}

PATTERN_CONTEXT = "Standard format detected by pattern matching"

_MONTH = (
    r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
_DAY = r"(?:0?[1-9]|[12]\d|3[01])"
_YEAR = r"(?:19|20)\d{2}"

# Mastercard 2-series and Discover prefixes, 4 digits each
_MC2 = r"2(?:2\d{2}|[3-6]\d{2}|70[0-4])"
_DISCOVER = r"6(?:011|5\d{2}|4[4-9]\d)"

_ACCOUNT_LABEL = re.compile(
    r"\b(?:account|acct)\.?\s*(?:number|num|no\.?|#)?\s*[:#]?\s*$", re.IGNORECASE
)


# ── Validators ───────────────────────────────────────────────────────

def _digits(value: str) -> str:
    return "".join(c for c in value if c.isdigit())


def valid_ssn(value: str) -> bool:
    digits = _digits(value)
    if len(digits) != 9:
        return False
    area, group, serial = digits[:3], digits[3:5], digits[5:]
    if area in ("000", "666") or area.startswith("9"):
        return False
    return group != "00" and serial != "0000"


def luhn_ok(value: str) -> bool:
    digits = [int(c) for c in _digits(value)]
    if not digits:
        return False
    checksum = 0
    for i, d in enumerate(reversed(digits)):
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        checksum += d
    return checksum % 10 == 0


_MONTH_NUMBERS = {
    name: i for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"], 1
    )
}


def valid_date(value: str) -> bool:
    """Reject calendar-impossible dates such as 02/31/1990."""
    numbers = re.findall(r"\d+", value)
    month_word = next(
        (w for w in re.findall(r"[A-Za-z]+", value) if w[:3].lower() in _MONTH_NUMBERS and len(w) >= 3),
        None,
    )
    try:
        if month_word is not None:
            day, year = int(numbers[0]), int(numbers[-1])
            month = _MONTH_NUMBERS[month_word[:3].lower()]
        elif len(numbers[0]) == 4:
            year, month, day = (int(n) for n in numbers[:3])
        else:
            month, day, year = (int(n) for n in numbers[:3])
        datetime.date(year, month, day)
    except (ValueError, IndexError):
        return False
    return True


# ── Pattern table ────────────────────────────────────────────────────
# Each entry: (type, presidio patterns, context words, validator)

_PATTERNS: list[tuple[PIIType, list[Pattern], list[str], Callable[[str], bool] | None]] = [
    (PIIType.SSN, [
        Pattern(
            "ssn",
            r"\b(?!000|666|9\d{2})\d{3}([-\s]?)(?!00)\d{2}\1(?!0000)\d{4}\b",
            BASE_CONFIDENCE[PIIType.SSN],
        ),
    ], ["ssn", "social", "security"], valid_ssn),

    (PIIType.CREDIT_CARD, [
        Pattern(
            "card_compact",
            r"\b(?:4\d{12}(?:\d{3})?|5[1-5]\d{14}|" + _MC2 + r"\d{12}|3[47]\d{13}|" + _DISCOVER + r"\d{12})\b",
            BASE_CONFIDENCE[PIIType.CREDIT_CARD],
        ),
        Pattern(
            "card_grouped",
            r"\b(?:4\d{3}|5[1-5]\d{2}|" + _MC2 + "|" + _DISCOVER + r")([-\s])\d{4}\1\d{4}\1\d{4}\b",
            BASE_CONFIDENCE[PIIType.CREDIT_CARD],
        ),
        Pattern(
            "amex_grouped",
            r"\b3[47]\d{2}([-\s])\d{6}\1\d{5}\b",
            BASE_CONFIDENCE[PIIType.CREDIT_CARD],
        ),
    ], ["card", "credit", "visa", "mastercard", "amex", "discover"], None),

    (PIIType.ACCOUNT_NUMBER, [
        Pattern("account_digits", r"\b\d{8,17}\b", BASE_CONFIDENCE[PIIType.ACCOUNT_NUMBER]),
    ], ["account", "acct"], None),

    (PIIType.PHONE, [
        Pattern(
            "phone_nanp",
            r"(?<![\w+(])(?:\+?1[-.\s]?)?(?:\([2-9]\d{2}\)\s?|[2-9]\d{2}[-.\s]?)[2-9]\d{2}[-.\s]?\d{4}\b",
            BASE_CONFIDENCE[PIIType.PHONE],
        ),
        Pattern(
            "phone_international",
            r"(?<![\w+])\+(?:[2-9]\d{0,2}|1\d{2})[-.\s]?(?:\(\d{1,4}\)[-.\s]?)?\d{2,4}(?:[-.\s]?\d{2,4}){1,3}\b",
            BASE_CONFIDENCE[PIIType.PHONE],
        ),
    ], ["phone", "tel", "mobile", "cell"], None),

    (PIIType.EMAIL, [
        Pattern(
            "email",
            r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b",
            BASE_CONFIDENCE[PIIType.EMAIL],
        ),
    ], ["email", "mail"], None),

    (PIIType.DOB, [
        Pattern(
            "dob_numeric",
            r"\b(?:0?[1-9]|1[0-2])([/-])" + _DAY + r"\1" + _YEAR + r"\b",
            BASE_CONFIDENCE[PIIType.DOB],
        ),
        Pattern(
            "dob_iso",
            r"\b" + _YEAR + r"-(?:0[1-9]|1[0-2])-(?:0[1-9]|[12]\d|3[01])\b",
            BASE_CONFIDENCE[PIIType.DOB],
        ),
        Pattern(
            "dob_month_first",
            r"\b" + _MONTH + r"\.?\s+" + _DAY + r"(?:st|nd|rd|th)?,?\s+" + _YEAR + r"\b",
            BASE_CONFIDENCE[PIIType.DOB],
        ),
        Pattern(
            "dob_day_first",
            r"\b" + _DAY + r"(?:st|nd|rd|th)?\s+(?:of\s+)?" + _MONTH + r"\.?,?\s+" + _YEAR + r"\b",
            BASE_CONFIDENCE[PIIType.DOB],
        ),
    ], ["born", "birth", "dob", "birthday"], valid_date),
]


# ── Presets ──────────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class Preset:
    """A named type filter."""
    label: str
    description: str
    types: tuple[PIIType, ...]


PRESETS: dict[str, Preset] = {
    "ssn-financial": Preset(
        "SSNs and Financial Account Numbers",
        "Redact Social Security Numbers, bank accounts, and credit cards",
        (PIIType.SSN, PIIType.ACCOUNT_NUMBER, PIIType.CREDIT_CARD),
    ),
    "all-pii": Preset(
        "All Personal Information",
        "Redact all detectable PII including names, addresses, and contact info",
        (PIIType.SSN, PIIType.ACCOUNT_NUMBER, PIIType.CREDIT_CARD, PIIType.NAME,
         PIIType.ADDRESS, PIIType.PHONE, PIIType.EMAIL, PIIType.DOB),
    ),
    "contact-info": Preset(
        "Contact Information Only",
        "Redact phone numbers and email addresses",
        (PIIType.PHONE, PIIType.EMAIL),
    ),
    "financial-only": Preset(
        "Financial Information Only",
        "Redact bank accounts and credit card numbers",
        (PIIType.ACCOUNT_NUMBER, PIIType.CREDIT_CARD),
    ),
}


def preset_types(name: str) -> list[PIIType]:
    """Types of a named preset.  Raises InputError for an unknown name."""
    preset = PRESETS.get(str(name).strip().lower())
    if preset is None:
        raise InputError(f"unknown preset: {name!r} (expected one of {', '.join(PRESETS)})")
    return list(preset.types)


class TypeRecognizer(PatternRecognizer):
    """PatternRecognizer whose hits must also pass a type validator."""

    def __init__(
        self,
        pii_type: PIIType,
        patterns: list[Pattern],
        context: list[str],
        validator: Callable[[str], bool] | None = None,
    ) -> None:
        super().__init__(
            supported_entity=pii_type.value,
            name=f"{pii_type.value.lower()}_recognizer",
            patterns=patterns,
            context=context,
        )
        self.pii_type = pii_type
        self.validator = validator

    def invalidate_result(self, pattern_text: str) -> bool | None:
        if self.validator is None:
            return None
        return not self.validator(pattern_text)


class PatternMatcher:
    """Pure, synchronous detector for the structured PII types."""

    def __init__(self, *, luhn_check: bool = False) -> None:
        self.luhn_check = luhn_check
        self._recognizers: dict[PIIType, TypeRecognizer] = {}
        for pii_type, patterns, context, validator in _PATTERNS:
            if pii_type is PIIType.CREDIT_CARD and luhn_check:
                validator = luhn_ok
            self._recognizers[pii_type] = TypeRecognizer(pii_type, patterns, context, validator)

    @property
    def supported_types(self) -> list[PIIType]:
        return list(self._recognizers)

    def detect(self, text: str, types: Iterable[PIIType | str] | None = None) -> list[DetectedEntity]:
        """Run every requested pattern family and pre-merge the hits."""
        wanted = parse_types(types)
        matches: list[DetectedEntity] = []
        for pii_type, recognizer in self._recognizers.items():
            if wanted is not None and pii_type not in wanted:
                continue
            for result in recognizer.analyze(text, entities=[pii_type.value]):
                matches.append(DetectedEntity(
                    type=pii_type,
                    value=text[result.start:result.end],
                    span=Span(result.start, result.end),
                    confidence=BASE_CONFIDENCE[pii_type],
                    detection_method=DetectionMethod.PATTERN,
                    context=_describe(text, pii_type, result.start),
                ))
        merged = merge_entities(matches)
        logger.debug("pattern pass: %d raw hits, %d after merge", len(matches), len(merged))
        return merged

    def extract_values(self, passage: str, pii_type: PIIType | str) -> list[str]:
        """Distinct literal values of one type found in a passage."""
        pii_type = PIIType.parse(pii_type)
        recognizer = self._recognizers.get(pii_type)
        if recognizer is None:
            return []
        values: list[str] = []
        for result in sorted(recognizer.analyze(passage, entities=[pii_type.value]), key=lambda r: r.start):
            value = passage[result.start:result.end]
            if value not in values:
                values.append(value)
        return values


def _describe(text: str, pii_type: PIIType, start: int) -> str:
    if pii_type is PIIType.ACCOUNT_NUMBER and _ACCOUNT_LABEL.search(text[max(0, start - 32):start]):
        return "Account number following an account label"
    return PATTERN_CONTEXT


def scan_patterns(text: str, types: Iterable[PIIType | str] | None = None) -> list[DetectedEntity]:
    """Module-level convenience over a default PatternMatcher."""
    return _default_matcher().detect(text, types)


_matcher: PatternMatcher | None = None


def _default_matcher() -> PatternMatcher:
    global _matcher
    if _matcher is None:
        _matcher = PatternMatcher()
    return _matcher
