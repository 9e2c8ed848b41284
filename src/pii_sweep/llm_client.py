"""Generative text service client and the tolerant parser for its findings.

The service is any OpenAI-compatible chat completions endpoint.  Every
transport failure surfaces as ``ExternalServiceError``; every unreadable
response as ``ParseError``.  Callers decide what to do with them.
"""

from __future__ import annotations
import json
import logging
import os
import re
from typing import Any, Protocol

from openai import OpenAI, OpenAIError
from pydantic import ValidationError

from .errors import ExternalServiceError, ParseError
from .schemas import Finding

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"

_FENCE = re.compile(r"```(?:json)?\s*", re.IGNORECASE)
_ARRAY = re.compile(r"\[.*\]", re.DOTALL)


class CompletionClient(Protocol):
    """Anything that can answer one system + user prompt with text."""

    def complete(self, system: str, user: str) -> str: ...


class GenerativeClient:
    """Blocking chat-completions client with a bounded timeout."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = DEFAULT_MODEL,
        temperature: float = 0.0,
        max_tokens: int = 4096,
        timeout: float = 60.0,
        max_retries: int = 0,
    ) -> None:
        key = api_key or os.getenv("PII_SWEEP_LLM_API_KEY") or os.getenv("OPENAI_API_KEY")
        if not key or not key.strip():
            raise ValueError("generative service API key not set")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = OpenAI(
            api_key=key.strip(),
            base_url=base_url or os.getenv("PII_SWEEP_LLM_BASE_URL") or None,
            timeout=timeout,
            max_retries=max_retries,
        )

    def complete(self, system: str, user: str) -> str:
        try:
            completion = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise ExternalServiceError(f"generative service call failed: {e}") from e

        if not completion.choices:
            raise ExternalServiceError("generative service returned no choices")
        return completion.choices[0].message.content or "[]"

    def get_model_info(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "base_url": str(self.client.base_url),
        }


# ── Findings ─────────────────────────────────────────────────────────

def _strip_fences(content: str) -> str:
    return _FENCE.sub("", content).strip()


def _load_items(content: str) -> list[Any]:
    cleaned = _strip_fences(content)
    if not cleaned:
        return []
    try:
        parsed = json.loads(cleaned)
    except (ValueError, RecursionError):
        match = _ARRAY.search(cleaned)
        if not match:
            raise ParseError("no JSON array in model response") from None
        try:
            parsed = json.loads(match.group())
        except (ValueError, RecursionError) as e:
            raise ParseError(f"malformed JSON in model response: {e}") from e

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict):
        # {"findings": [...]} style wrapper
        for value in parsed.values():
            if isinstance(value, list):
                return value
        return []
    raise ParseError(f"expected a JSON array, got {type(parsed).__name__}")


def parse_findings(content: str) -> list[Finding]:
    """Read a model response as a list of findings.

    Raises ParseError when the response holds no JSON array at all; items
    without a known type or a non-empty string value are dropped.
    """
    findings: list[Finding] = []
    for item in _load_items(content):
        try:
            findings.append(Finding.model_validate(item))
        except ValidationError as e:
            logger.debug("dropping unreadable finding: %d errors", e.error_count())
    return findings


def anchor(text: str, value: str, hint: int | None = None) -> tuple[int, int] | None:
    """Locate a reported value in the text.

    The reported offset is trusted only when it points at the value; otherwise
    the occurrence nearest the hint wins, exact matches before
    case-insensitive ones.
    """
    if not value:
        return None
    if hint is not None and 0 <= hint and text[hint:hint + len(value)] == value:
        return hint, hint + len(value)

    for flags in (0, re.IGNORECASE):
        spans = [m.span() for m in re.finditer(re.escape(value), text, flags)]
        if spans:
            if hint is None:
                return spans[0]
            return min(spans, key=lambda s: abs(s[0] - hint))
    return None
