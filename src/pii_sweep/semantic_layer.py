"""Pass 4 (optional) — semantic index extraction.

Asks an external semantic index for passages about each structured PII type,
pulls literal values out of the passages with the pattern matcher, then
locates every occurrence of those values in the original text.
"""

from __future__ import annotations
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Iterable

import httpx

from .errors import ExternalServiceError
from .patterns import BASE_CONFIDENCE, PatternMatcher
from .merge import merge_entities
from .schemas import SearchHit
from .types import DetectedEntity, DetectionMethod, DocumentContext, PIIType, Span, parse_types

logger = logging.getLogger(__name__)

QUERIES: dict[PIIType, tuple[str, ...]] = {
    PIIType.SSN: (
        "social security number or taxpayer identification",
        "SSN or TIN",
    ),
    PIIType.ACCOUNT_NUMBER: (
        "bank account number or routing number",
        "account number",
    ),
    PIIType.CREDIT_CARD: ("credit card or debit card number",),
    PIIType.PHONE: ("phone number, telephone, mobile or fax",),
    PIIType.EMAIL: ("email address or contact email",),
    PIIType.DOB: ("date of birth or birthday",),
}


@dataclass(frozen=True, slots=True)
class Passage:
    text: str
    score: float = 0.0
    document_id: str | None = None


class SemanticIndexClient:
    """HTTP client for a document-scoped semantic search service."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        base_url = base_url or os.getenv("PII_SWEEP_SEMANTIC_URL")
        if not base_url:
            raise ValueError("semantic index URL not set")
        key = api_key or os.getenv("PII_SWEEP_SEMANTIC_API_KEY")
        headers = {"Authorization": f"Bearer {key}"} if key else {}
        self._http = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    def search(
        self,
        query: str,
        *,
        index_id: str,
        document_id: str,
        method: str = "hybrid",
        top_k: int = 10,
    ) -> list[Passage]:
        body = {
            "query": query,
            "method": method,
            "topK": top_k,
            "filters": {"documentId": document_id},
        }
        try:
            response = self._http.post(f"/indexes/{index_id}/search", json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ExternalServiceError(f"semantic search failed: {e}") from e

        passages: list[Passage] = []
        for item in _result_items(payload):
            hit = SearchHit.model_validate(item)
            if hit.body is None:
                continue
            if hit.doc_id is not None and hit.doc_id != document_id:
                continue
            passages.append(Passage(text=hit.body, score=hit.score, document_id=hit.doc_id))
        return passages

    def close(self) -> None:
        self._http.close()


def _result_items(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("results") or payload.get("chunks") or []
    else:
        items = []
    return [i for i in items if isinstance(i, dict)]


class SemanticSearchExtractor:
    """Structured-PII recall through a semantic index."""

    def __init__(
        self,
        index: SemanticIndexClient | None,
        matcher: PatternMatcher,
        *,
        method: str = "hybrid",
        top_k: int = 10,
    ) -> None:
        self.index = index
        self.matcher = matcher
        self.method = method
        self.top_k = top_k

    def extract(
        self,
        text: str,
        context: DocumentContext | None,
        types: Iterable[PIIType | str] | None = None,
    ) -> list[DetectedEntity]:
        if self.index is None or context is None:
            return []
        wanted = parse_types(types)
        entities: list[DetectedEntity] = []
        failures = 0
        queries = 0

        for pii_type, type_queries in QUERIES.items():
            if wanted is not None and pii_type not in wanted:
                continue
            values: list[str] = []
            for query in type_queries:
                queries += 1
                try:
                    passages = self.index.search(
                        query,
                        index_id=context.index_id,
                        document_id=context.document_id,
                        method=self.method,
                        top_k=self.top_k,
                    )
                except ExternalServiceError as e:
                    failures += 1
                    logger.warning("semantic query for %s skipped: %s", pii_type.value, e)
                    continue
                for passage in passages:
                    for value in self.matcher.extract_values(passage.text, pii_type):
                        if value not in values:
                            values.append(value)
            entities.extend(_locate(text, pii_type, values))

        if queries and failures == queries:
            logger.warning("semantic index unavailable, pass skipped")
        merged = merge_entities(entities)
        logger.debug("semantic pass: %d entities from %d queries", len(merged), queries)
        return merged


def _locate(text: str, pii_type: PIIType, values: list[str]) -> list[DetectedEntity]:
    """Every exact occurrence of each value in the original text."""
    found: list[DetectedEntity] = []
    for value in values:
        for m in re.finditer(f"(?=({re.escape(value)}))", text):
            start, end = m.span(1)
            found.append(DetectedEntity(
                type=pii_type,
                value=value,
                span=Span(start, end),
                confidence=BASE_CONFIDENCE[pii_type],
                detection_method=DetectionMethod.SEMANTIC,
                context="Found through semantic search of the document",
            ))
    return found
