"""Tests for the session cache, its stores, the rate limiter and config."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import json

import pytest

from pii_sweep import (
    CacheFormatError, InputError, MemorySessionStore, PIIType, RateLimiter, RateLimitExceeded,
    SessionCache, SqliteSessionStore, signature,
)
from pii_sweep.config import (
    create_cache, create_rate_limiter, create_redactor, load_config, load_from_yaml,
)
from pii_sweep.llm_client import GenerativeClient


ENV_VARS = (
    "PII_SWEEP_LLM_API_KEY", "PII_SWEEP_LLM_BASE_URL", "PII_SWEEP_LLM_MODEL",
    "PII_SWEEP_SEMANTIC_URL", "PII_SWEEP_SEMANTIC_API_KEY", "OPENAI_API_KEY",
)


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


# ── Signature ────────────────────────────────────────────────────────

def test_signature_layout():
    assert signature("a") == "6161001"
    assert signature("ab") == "61c21622"
    assert signature("") == "000000"


def test_signature_case_insensitive_and_one_way():
    assert signature("Jane Roe") == signature("JANE ROE")
    assert signature("Jane Roe") != signature("Jane Doe")
    assert "Jane" not in signature("Jane Roe")


# ── SessionCache ─────────────────────────────────────────────────────

def test_add_and_repeat():
    cache = SessionCache("s")
    first = cache.add("123-45-6789", "***-**-6789", "SSN")
    again = cache.add("123-45-6789", "[SSN]", PIIType.SSN)
    assert cache.size == 1
    assert again.id == first.id
    entry = cache.entries()[0]
    assert entry.usage_count == 2
    assert entry.masked_value == "[SSN]"
    assert entry.value_length == 11
    assert entry.type is PIIType.SSN


def test_records_hold_no_raw_value():
    cache = SessionCache("s")
    cache.add("alice@example.com", "a***@example.com", "EMAIL")
    assert "alice@example.com" not in cache.export()


def test_add_rejects_bad_input():
    cache = SessionCache("s")
    with pytest.raises(InputError):
        cache.add("", "[NAME]", "NAME")
    with pytest.raises(InputError):
        cache.add("Jane", "[NAME]", "NICKNAME")


def test_lookup():
    cache = SessionCache("s")
    cache.add("Jane Roe", "[NAME]", "NAME")
    assert cache.lookup("jane roe").masked_value == "[NAME]"
    assert cache.lookup("John Roe") is None


def test_find_cached_matches():
    cache = SessionCache("s")
    cache.add("Jane Roe", "[NAME]", "NAME")
    text = "Jane Roe met JANE ROE and jane roe."
    matches = cache.find_cached_matches(text)
    assert [(m.span.start, m.span.end) for m in matches] == [(0, 8), (13, 21), (26, 34)]
    assert all(m.cached.masked_value == "[NAME]" for m in matches)


def test_find_cached_matches_first_wins_on_overlap():
    cache = SessionCache("s")
    cache.add("bcde", "[B]", "CUSTOM")
    cache.add("abcd", "[A]", "CUSTOM")
    matches = cache.find_cached_matches("xabcdefx")
    assert [(m.cached.masked_value, m.span.start) for m in matches] == [("[A]", 1)]


def test_find_cached_matches_empty_cache():
    assert SessionCache("s").find_cached_matches("anything") == []


def test_eviction_keeps_most_used():
    cache = SessionCache("s", max_size=2)
    cache.add("alpha", "[A]", "CUSTOM")
    cache.add("alpha", "[A]", "CUSTOM")
    cache.add("beta", "[B]", "CUSTOM")
    cache.add("gamma", "[G]", "CUSTOM")
    assert cache.size == 2
    assert cache.lookup("alpha") is not None


def test_remove_and_clear():
    cache = SessionCache("s")
    entry = cache.add("Jane Roe", "[NAME]", "NAME")
    cache.add("12 Oak Street", "[ADDRESS]", "ADDRESS")
    assert cache.remove(entry.id) is True
    assert cache.remove(entry.id) is False
    assert cache.size == 1
    cache.clear()
    assert cache.size == 0


def test_stats():
    cache = SessionCache("s")
    cache.add_many([
        ("Jane Roe", "[NAME]", "NAME"),
        ("John Roe", "[NAME]", "NAME"),
        ("Jane Roe", "[NAME]", "NAME"),
        ("123-45-6789", "***-**-6789", "SSN"),
    ])
    assert cache.stats() == {"totalItems": 3, "totalUsage": 4, "byType": {"NAME": 2, "SSN": 1}}


def test_sessions_are_isolated():
    store = MemorySessionStore()
    SessionCache("a", store).add("Jane Roe", "[NAME]", "NAME")
    assert SessionCache("b", store).size == 0
    assert store.list_sessions() == ["a"]


# ── Export / import ──────────────────────────────────────────────────

def _records(cache):
    return sorted((e.to_dict() for e in cache.entries()), key=lambda r: r["id"])


def test_export_import_round_trip():
    source = SessionCache("src")
    source.add("Jane Roe", "[NAME]", "NAME")
    source.add("Jane Roe", "[NAME]", "NAME")
    source.add("555-234-5678", "(***) ***-5678", "PHONE")

    target = SessionCache("dst")
    target.add("something else", "[REDACTED]", "CUSTOM")
    assert target.import_(source.export(), merge=False) == 2
    assert _records(target) == _records(source)


def test_import_merge_keeps_higher_usage():
    source = SessionCache("src")
    for _ in range(3):
        source.add("Jane Roe", "[NAME]", "NAME")

    target = SessionCache("dst")
    target.add("Jane Roe", "[NAME]", "NAME")
    target.add("12 Oak Street", "[ADDRESS]", "ADDRESS")
    target.import_(source.export())
    assert target.size == 2
    assert target.lookup("Jane Roe").usage_count == 3


def test_import_fills_missing_id_and_timestamp():
    cache = SessionCache("s")
    payload = json.dumps([{
        "valueHash": signature("Jane Roe"), "maskedValue": "[NAME]", "type": "NAME", "valueLength": 8,
    }])
    assert cache.import_(payload) == 1
    entry = cache.entries()[0]
    assert entry.id
    assert entry.created_at
    assert entry.usage_count == 1
    assert cache.find_cached_matches("Dear Jane Roe,")[0].span.start == 5


@pytest.mark.parametrize("payload", [
    "not json",
    '{"valueHash": "x"}',
    '[{"valueHash": "x"}]',
    '[{"valueHash": "x", "maskedValue": "[N]", "type": "NICKNAME", "valueLength": 4}]',
    '[{"valueHash": "x", "maskedValue": "[N]", "type": "NAME", "valueLength": 0}]',
    '[{"valueHash": "x", "maskedValue": "[N]", "type": "NAME", "valueLength": "4"}]',
    '[{"valueHash": "x", "maskedValue": "[N]", "type": "NAME", "valueLength": 4, "usageCount": 0}]',
    '[{"valueHash": "x", "maskedValue": "[N]", "type": "NAME", "valueLength": true}]',
    '[{"valueHash": 5, "maskedValue": "[N]", "type": "NAME", "valueLength": 4}]',
    '[{"valueHash": "x", "maskedValue": "[N]", "type": ["NAME"], "valueLength": 4}]',
    "",
])
def test_corrupt_import_leaves_cache_untouched(payload):
    cache = SessionCache("s")
    cache.add("Jane Roe", "[NAME]", "NAME")
    before = _records(cache)
    with pytest.raises(CacheFormatError):
        cache.import_(payload, merge=False)
    assert _records(cache) == before


# ── SQLite store ─────────────────────────────────────────────────────

def test_sqlite_store_persists(tmp_path):
    db = tmp_path / "nested" / "cache.db"
    store = SqliteSessionStore(db_path=db)
    SessionCache("s1", store).add("Jane Roe", "[NAME]", "NAME")
    SessionCache("s2", store).add("123-45-6789", "***-**-6789", "SSN")
    store.close()

    reopened = SqliteSessionStore(db_path=db)
    cache = SessionCache("s1", reopened)
    assert cache.lookup("jane roe").masked_value == "[NAME]"
    assert sorted(reopened.list_sessions()) == ["s1", "s2"]
    cache.clear()
    assert reopened.list_sessions() == ["s2"]
    reopened.close()


def test_sqlite_store_round_trip(tmp_path):
    store = SqliteSessionStore(db_path=tmp_path / "cache.db")
    cache = SessionCache("s", store)
    cache.add("Jane Roe", "[NAME]", "NAME")
    cache.add("Jane Roe", "[NAME]", "NAME")
    payload = cache.export()
    cache.import_(payload, merge=False)
    assert json.loads(cache.export()) == json.loads(payload)
    store.close()


# ── Rate limiter ─────────────────────────────────────────────────────

def test_rate_limiter_window():
    clock = FakeClock()
    limiter = RateLimiter(2, 60, clock=clock)
    assert limiter.check("a").remaining == 1
    assert limiter.check("a").remaining == 0
    blocked = limiter.check("a")
    assert not blocked.allowed
    assert blocked.reset_in == 60
    assert limiter.check("b").allowed

    clock.now = 61
    assert limiter.check("a").allowed


def test_rate_limiter_enforce():
    limiter = RateLimiter(1, 60, clock=FakeClock())
    limiter.enforce("a")
    with pytest.raises(RateLimitExceeded) as exc:
        limiter.enforce("a")
    assert exc.value.reset_in == 60
    limiter.reset("a")
    assert limiter.enforce("a").allowed


def test_rate_limiter_is_bounded():
    clock = FakeClock()
    limiter = RateLimiter(5, 60, max_keys=2, clock=clock)
    for key in ("a", "b", "c"):
        limiter.check(key)
    assert len(limiter) == 2

    clock.now = 120
    limiter.check("d")
    assert len(limiter) == 1


# ── Config ───────────────────────────────────────────────────────────

def test_load_config_defaults(clean_env):
    cfg = load_config({})
    assert cfg["types"] is None
    assert cfg["luhn_check"] is False
    assert cfg["llm_api_key"] is None
    assert cfg["cache_backend"] == "memory"
    assert cfg["cache_max_size"] == 200
    assert cfg["rate_limit"] == 20
    assert cfg["use_semantic"] is True


def test_load_config_nested(clean_env):
    cfg = load_config({"pii_sweep": {
        "types": ["SSN", "NAME"],
        "luhn_check": True,
        "llm": {"model": "local/model", "timeout": 5},
        "passes": {"semantic": False},
        "rate_limit": {"limit": 3, "window_seconds": 10},
    }})
    assert cfg["types"] == ["SSN", "NAME"]
    assert cfg["luhn_check"] is True
    assert cfg["llm_model"] == "local/model"
    assert cfg["llm_timeout"] == 5.0
    assert cfg["use_semantic"] is False
    assert create_rate_limiter(cfg).limit == 3


def test_load_config_env(clean_env, monkeypatch):
    monkeypatch.setenv("PII_SWEEP_LLM_API_KEY", "env-key")
    monkeypatch.setenv("PII_SWEEP_SEMANTIC_URL", "http://index.test")
    cfg = load_config({})
    assert cfg["llm_api_key"] == "env-key"
    assert cfg["semantic_base_url"] == "http://index.test"


def test_load_from_yaml(clean_env, tmp_path):
    path = tmp_path / "pii.yaml"
    path.write_text("pii_sweep:\n  luhn_check: true\n  cache:\n    backend: sqlite\n    max_size: 5\n")
    cfg = load_from_yaml(path)
    assert cfg["luhn_check"] is True
    assert cfg["cache_backend"] == "sqlite"
    assert cfg["cache_max_size"] == 5


def test_create_redactor_without_key(clean_env):
    redactor = create_redactor({"luhn_check": True})
    assert redactor.contextual.client is None
    assert redactor.unstructured.client is None
    assert redactor.semantic.index is None
    assert redactor.matcher.luhn_check is True


def test_create_redactor_with_key(clean_env):
    redactor = create_redactor({
        "llm": {"api_key": "k", "base_url": "http://llm.test/v1"},
        "semantic": {"base_url": "http://index.test"},
        "passes": {"contextual": False},
    })
    assert redactor.contextual.client is None
    assert isinstance(redactor.unstructured.client, GenerativeClient)
    assert redactor.semantic.index is not None
    assert redactor.llm.model == "gpt-4o"


def test_create_redactor_with_preset(clean_env, tmp_path):
    path = tmp_path / "pii.yaml"
    path.write_text("pii_sweep:\n  preset: financial-only\n")
    cfg = load_from_yaml(path)
    assert cfg["preset"] == "financial-only"
    redactor = create_redactor(cfg)
    assert [e.type for e in redactor.detect_all("SSN 123-45-6789, acct 12345678901")] == [
        PIIType.ACCOUNT_NUMBER,
    ]


def test_create_cache_backends(clean_env, tmp_path):
    memory = create_cache({}, "s")
    assert memory.size == 0

    cfg = {"cache": {"backend": "sqlite", "path": str(tmp_path / "c.db"), "max_size": 5}}
    cache = create_cache(cfg, "s")
    cache.add("Jane Roe", "[NAME]", "NAME")
    assert cache.max_size == 5
    assert create_cache(cfg, "s").size == 1
