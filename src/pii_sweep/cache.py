"""SessionCache — hash-only memory of confirmed redactions, scoped to a session.

Design goals:
  - Non-reversible: only a composite signature, the masked value, the type and
    the value length are kept, never the raw value
  - Bounded: at most ``max_size`` records, least used and oldest evicted first
  - Best effort: stores are last-writer-wins, no cross-process locking

The signature is a 32-bit character fold plus first/last character and
length.  It is NOT collision-free, and with no raw value retained a collision
cannot be told apart from a real repeat.
"""

from __future__ import annotations
import json
import logging
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from pydantic import ValidationError

from .errors import CacheFormatError, InputError
from .schemas import CACHE_PAYLOAD
from .types import CachedMatch, CachedRedaction, PIIType, Span

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 200

def _fold(value: str) -> str:
    """Lower-case without changing length, so offsets survive folding."""
    out: list[str] = []
    for ch in value:
        lower = ch.lower()
        out.append(lower if len(lower) == 1 else ch)
    return "".join(out)


def signature(value: str) -> str:
    """One-way composite signature of a value (case-insensitive)."""
    folded = _fold(value)
    h = 0
    for ch in folded:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    prefix = f"{ord(folded[0]):x}" if folded else "00"
    suffix = f"{ord(folded[-1]):x}" if len(folded) > 1 else "00"
    return f"{prefix}{abs(h):x}{suffix}{len(folded)}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


class SessionStore(Protocol):
    """Where a session's records live between calls."""

    def load(self, session_id: str) -> list[dict[str, Any]]: ...
    def save(self, session_id: str, records: list[dict[str, Any]]) -> None: ...
    def delete_session(self, session_id: str) -> None: ...
    def list_sessions(self) -> list[str]: ...


class MemorySessionStore:
    """Process-local store.  Contents vanish with the process."""

    __slots__ = ("_sessions",)

    def __init__(self) -> None:
        self._sessions: dict[str, list[dict[str, Any]]] = {}

    def load(self, session_id: str) -> list[dict[str, Any]]:
        return [dict(r) for r in self._sessions.get(session_id, [])]

    def save(self, session_id: str, records: list[dict[str, Any]]) -> None:
        self._sessions[session_id] = [dict(r) for r in records]

    def delete_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def list_sessions(self) -> list[str]:
        return list(self._sessions)


class SessionCache:
    """Recognises previously redacted values within one client session."""

    __slots__ = ("session_id", "max_size", "_store")

    def __init__(
        self,
        session_id: str = "default",
        store: SessionStore | None = None,
        *,
        max_size: int = DEFAULT_MAX_SIZE,
    ) -> None:
        self.session_id = session_id
        self.max_size = max_size
        self._store = store if store is not None else MemorySessionStore()

    # ------------------------------------------------------------------
    # Core API
    # ------------------------------------------------------------------

    def entries(self) -> list[CachedRedaction]:
        return [CachedRedaction.from_dict(r) for r in self._store.load(self.session_id)]

    def add(self, value: str, masked_value: str, pii_type: PIIType | str) -> CachedRedaction:
        """Record a confirmed redaction; repeats bump the usage count."""
        entries = self.entries()
        entry = self._upsert(entries, value, masked_value, pii_type)
        self._save(entries)
        return entry

    def add_many(self, items: Iterable[tuple[str, str, PIIType | str]]) -> None:
        entries = self.entries()
        count = 0
        for value, masked_value, pii_type in items:
            self._upsert(entries, value, masked_value, pii_type)
            count += 1
        if count:
            self._save(entries)

    def lookup(self, value: str) -> CachedRedaction | None:
        """Cached record whose signature equals the value's, if any."""
        value_hash = signature(value)
        return next((e for e in self.entries() if e.value_hash == value_hash), None)

    def find_cached_matches(self, text: str) -> list[CachedMatch]:
        """Spans of text whose signature matches a cached record.

        Every substring with a cached length is hashed, so the cost grows
        with text length × cache size × value length.  Overlaps are resolved
        left to right, first match wins.
        """
        entries = self.entries()
        if not entries:
            return []
        folded = _fold(text)
        candidates: list[CachedMatch] = []

        for cached in entries:
            length = cached.value_length
            if length <= 0 or length > len(folded):
                continue
            i = 0
            while i <= len(folded) - length:
                if signature(folded[i:i + length]) == cached.value_hash:
                    candidates.append(CachedMatch(cached=cached, span=Span(i, i + length)))
                    i += length
                else:
                    i += 1

        candidates.sort(key=lambda m: m.span.start)
        accepted: list[CachedMatch] = []
        for match in candidates:
            if accepted and match.span.overlaps(accepted[-1].span):
                continue
            accepted.append(match)
        return accepted

    def remove(self, entry_id: str) -> bool:
        entries = self.entries()
        kept = [e for e in entries if e.id != entry_id]
        if len(kept) == len(entries):
            return False
        self._save(kept)
        return True

    def clear(self) -> None:
        self._store.delete_session(self.session_id)

    # ------------------------------------------------------------------
    # Introspection / transfer
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._store.load(self.session_id))

    def stats(self) -> dict[str, Any]:
        entries = self.entries()
        return {
            "totalItems": len(entries),
            "totalUsage": sum(e.usage_count for e in entries),
            "byType": dict(Counter(e.type.value for e in entries)),
        }

    def export(self) -> str:
        """JSON payload of the hash-only records."""
        return json.dumps([e.to_dict() for e in self.entries()], indent=2)

    def import_(self, payload: str, merge: bool = True) -> int:
        """Load records exported by ``export``.

        The whole payload is validated first; any bad record rejects the
        import with CacheFormatError and leaves the cache as it was.
        """
        imported = _parse_payload(payload)
        if merge:
            entries = self.entries()
            for item in imported:
                idx = next((i for i, e in enumerate(entries) if e.value_hash == item.value_hash), None)
                if idx is None:
                    entries.append(item)
                elif item.usage_count > entries[idx].usage_count:
                    entries[idx] = item
        else:
            entries = imported
        self._save(entries)
        logger.info("imported %d cache records into session %s", len(imported), self.session_id)
        return len(imported)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _upsert(
        entries: list[CachedRedaction],
        value: str,
        masked_value: str,
        pii_type: PIIType | str,
    ) -> CachedRedaction:
        if not value:
            raise InputError("cannot cache an empty value")
        pii_type = PIIType.parse(pii_type)
        value_hash = signature(value)
        for entry in entries:
            if entry.value_hash == value_hash:
                entry.usage_count += 1
                entry.masked_value = masked_value
                return entry
        entry = CachedRedaction(
            id=str(uuid.uuid4()),
            value_hash=value_hash,
            masked_value=masked_value,
            type=pii_type,
            created_at=_now(),
            usage_count=1,
            value_length=len(value),
        )
        entries.append(entry)
        return entry

    def _save(self, entries: list[CachedRedaction]) -> None:
        """Keep the most used, then most recent, records up to max_size."""
        ranked = sorted(entries, key=lambda e: e.created_at, reverse=True)
        ranked.sort(key=lambda e: e.usage_count, reverse=True)
        evicted = len(ranked) - self.max_size
        if evicted > 0:
            logger.debug("evicting %d cache records from session %s", evicted, self.session_id)
        self._store.save(self.session_id, [e.to_dict() for e in ranked[:self.max_size]])


def _parse_payload(payload: str | bytes) -> list[CachedRedaction]:
    try:
        records = CACHE_PAYLOAD.validate_json(payload)
    except ValidationError as e:
        raise CacheFormatError("Invalid cache format") from e
    return [
        r.to_redaction(default_id=str(uuid.uuid4()), default_created_at=_now())
        for r in records
    ]
