"""Pydantic schemas for untrusted payloads: model findings, cache imports and
semantic index hits.

Findings are read leniently.  A bad optional field becomes ``None`` and only
a missing type or value rejects the item.  Cache records are read strictly:
one bad record rejects the whole import.
"""

from __future__ import annotations
import math
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictInt, StrictStr, TypeAdapter, field_validator

from .types import CachedRedaction, PIIType


def _lenient_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        stripped = value.strip()
        digits = stripped[1:] if stripped.startswith("-") else stripped
        if digits.isascii() and digits.isdigit() and len(digits) <= 18:
            return int(stripped)
    return None


def _lenient_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        f = float(value)
    except (ValueError, OverflowError):
        return None
    return f if math.isfinite(f) else None


def _lenient_confidence(value: Any) -> Optional[float]:
    f = _lenient_float(value)
    return None if f is None else min(1.0, max(0.0, f))


def _lenient_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


# ============ Model findings ============

class Finding(BaseModel):
    """One model-reported finding.  Offsets are estimates, not facts."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    type: PIIType
    value: StrictStr
    start: Optional[int] = Field(None, alias="startIndex")
    end: Optional[int] = Field(None, alias="endIndex")
    normalized_value: Optional[str] = Field(None, alias="normalizedValue")
    confidence: Optional[float] = None
    context: Optional[str] = None
    related_to: Optional[str] = Field(None, alias="relatedTo")

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, v: Any) -> PIIType:
        if not isinstance(v, (str, PIIType)):
            raise ValueError("type must be a string")
        return PIIType.parse(v)

    @field_validator("value")
    @classmethod
    def _non_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("value is blank")
        return v

    @field_validator("start", "end", mode="before")
    @classmethod
    def _offset(cls, v: Any) -> Optional[int]:
        return _lenient_int(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, v: Any) -> Optional[float]:
        return _lenient_confidence(v)

    @field_validator("normalized_value", "context", "related_to", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return _lenient_text(v)


# ============ Cache records ============

class CachedRecord(BaseModel):
    """One record of an exported session cache."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    valueHash: StrictStr = Field(..., min_length=1)
    maskedValue: StrictStr = Field(..., min_length=1)
    type: PIIType
    createdAt: Optional[str] = None
    usageCount: StrictInt = Field(1, ge=1)
    valueLength: StrictInt = Field(..., gt=0)

    @field_validator("type", mode="before")
    @classmethod
    def _parse_type(cls, v: Any) -> PIIType:
        if not isinstance(v, (str, PIIType)):
            raise ValueError("type must be a string")
        return PIIType.parse(v)

    def to_redaction(self, *, default_id: str, default_created_at: str) -> CachedRedaction:
        return CachedRedaction(
            id=self.id or default_id,
            value_hash=self.valueHash,
            masked_value=self.maskedValue,
            type=self.type,
            created_at=self.createdAt or default_created_at,
            usage_count=self.usageCount,
            value_length=self.valueLength,
        )


CACHE_PAYLOAD = TypeAdapter(List[CachedRecord])


# ============ Semantic index hits ============

class SearchHit(BaseModel):
    """One result item from a semantic index search."""

    model_config = ConfigDict(extra="ignore")

    text: Optional[str] = None
    content: Optional[str] = None
    score: float = 0.0
    documentId: Optional[str] = None
    document_id: Optional[str] = None
    objectId: Optional[str] = None

    @field_validator("text", "content", mode="before")
    @classmethod
    def _text(cls, v: Any) -> Optional[str]:
        return v if isinstance(v, str) and v else None

    @field_validator("score", mode="before")
    @classmethod
    def _score(cls, v: Any) -> float:
        f = _lenient_float(v)
        return 0.0 if f is None else f

    @field_validator("documentId", "document_id", "objectId", mode="before")
    @classmethod
    def _doc_id(cls, v: Any) -> Optional[str]:
        return None if v is None or isinstance(v, (dict, list)) else str(v)

    @property
    def body(self) -> Optional[str]:
        return self.text or self.content

    @property
    def doc_id(self) -> Optional[str]:
        return self.documentId or self.document_id or self.objectId
