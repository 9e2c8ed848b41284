"""Masking — deterministic, type-specific display-safe replacements."""

from __future__ import annotations
import re
from typing import Callable

from .types import PIIType

_NON_DIGIT = re.compile(r"\D")

REDACTED = "[REDACTED]"


def _last_four(value: str) -> str:
    digits = _NON_DIGIT.sub("", value)
    return digits[-4:] if digits else "****"


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain:
        return "[EMAIL]"
    return f"{local[0]}***@{domain}"


_MASKERS: dict[PIIType, Callable[[str], str]] = {
    PIIType.SSN: lambda v: f"***-**-{_last_four(v)}",
    PIIType.CREDIT_CARD: lambda v: f"****-****-****-{_last_four(v)}",
    PIIType.ACCOUNT_NUMBER: lambda v: f"****{_last_four(v)}",
    PIIType.PHONE: lambda v: f"(***) ***-{_last_four(v)}",
    PIIType.EMAIL: _mask_email,
    PIIType.NAME: lambda v: "[NAME]",
    PIIType.ADDRESS: lambda v: "[ADDRESS]",
    PIIType.DOB: lambda v: "**/**/****",
}


def mask_entity(pii_type: PIIType | str, value: str, override: str | None = None) -> str:
    """Return the masked form of ``value``.

    ``override`` only applies to CUSTOM entities, where it replaces the
    literal ``[REDACTED]`` token.
    """
    pii_type = PIIType.parse(pii_type)
    if pii_type is PIIType.CUSTOM:
        return override if override else REDACTED
    return _MASKERS[pii_type](value)
