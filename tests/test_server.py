"""Tests for the outer surfaces: HTTP sidecar and CLI."""

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

import io
import json
import threading

import httpx
import pytest

from pii_sweep import MemorySessionStore, RateLimiter, Redactor
from pii_sweep.cli import main
from pii_sweep.llm_client import GenerativeClient
from pii_sweep.server import SidecarState, make_server


def _start(state):
    server = make_server(state, port=0)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, f"http://127.0.0.1:{server.server_port}"


@pytest.fixture
def sidecar():
    server, base = _start(SidecarState(Redactor(), MemorySessionStore(), RateLimiter(100, 60)))
    with httpx.Client(base_url=base, timeout=10) as client:
        yield client
    server.shutdown()
    server.server_close()


# ── Sidecar ──────────────────────────────────────────────────────────

def test_health(sidecar):
    response = sidecar.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["model"] is None


def test_health_reports_model():
    llm = GenerativeClient(api_key="test-key", base_url="http://llm.test/v1", model="m")
    server, base = _start(SidecarState(Redactor(llm=llm), MemorySessionStore(), RateLimiter(100, 60)))
    try:
        model = httpx.get(f"{base}/health", timeout=10).json()["model"]
        assert model["model"] == "m"
        assert model["base_url"].startswith("http://llm.test/v1")
    finally:
        server.shutdown()
        server.server_close()


def test_detect(sidecar):
    response = sidecar.post("/detect", json={"text": "SSN: 123-45-6789"})
    assert response.status_code == 200
    data = response.json()
    assert data["count"] == 1
    assert data["matches"][0]["type"] == "SSN"
    assert data["matches"][0]["maskedValue"] == "***-**-6789"


def test_detect_rejects_bad_input(sidecar):
    assert sidecar.post("/detect", json={"text": ""}).status_code == 400
    assert sidecar.post("/detect", json={"text": "x", "types": ["PASSPORT"]}).status_code == 400
    response = sidecar.post("/detect", content=b"{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert sidecar.post("/detect", json={"text": "x", "types": 5}).status_code == 400
    assert sidecar.post("/detect", json={"text": "x", "preset": "everything"}).status_code == 400
    assert sidecar.post("/detect", json={"text": "x", "preset": 3}).status_code == 400


def test_detect_with_preset(sidecar):
    text = "SSN: 123-45-6789, email alice@example.com"
    data = sidecar.post("/detect", json={"text": text, "preset": "contact-info"}).json()
    assert [m["type"] for m in data["matches"]] == ["EMAIL"]
    data = sidecar.post("/detect", json={"text": text, "preset": "contact-info", "types": ["SSN"]}).json()
    assert [m["type"] for m in data["matches"]] == ["SSN"]


def test_redact_caches_only_when_confirmed(sidecar):
    response = sidecar.post("/redact", json={"session_id": "s1", "text": "SSN: 123-45-6789"})
    assert response.json()["text"] == "SSN: ***-**-6789"
    assert response.json()["confirmed"] == 0
    assert sidecar.get("/cache/stats", params={"session_id": "s1"}).json()["totalItems"] == 0

    body = {"session_id": "s1", "text": "SSN: 123-45-6789", "confirm": True}
    assert sidecar.post("/redact", json=body).json()["confirmed"] == 1

    stats = sidecar.get("/cache/stats", params={"session_id": "s1"}).json()
    assert stats["totalItems"] == 1
    assert sidecar.get("/cache/stats", params={"session_id": "other"}).json()["totalItems"] == 0

    again = sidecar.post("/redact", json={"session_id": "s1", "text": "Again 123-45-6789"}).json()
    assert again["cachedMatches"][0]["startIndex"] == 6


def test_mask(sidecar):
    response = sidecar.post("/mask", json={"type": "PHONE", "value": "555-234-5678"})
    assert response.json() == {"maskedValue": "(***) ***-5678"}
    assert sidecar.post("/mask", json={"type": "PASSPORT", "value": "X1"}).status_code == 400


def test_cache_add_find_remove(sidecar):
    entry = sidecar.post("/cache/add", json={
        "session_id": "s2", "value": "Jane Roe", "maskedValue": "[NAME]", "type": "NAME",
    }).json()
    assert "value" not in entry
    assert entry["valueLength"] == 8

    found = sidecar.post("/cache/find", json={"session_id": "s2", "text": "hello jane roe"}).json()
    assert found["matches"] == [{
        "id": entry["id"], "type": "NAME", "maskedValue": "[NAME]", "startIndex": 6, "endIndex": 14,
    }]

    removed = sidecar.post("/cache/remove", json={"session_id": "s2", "id": entry["id"]}).json()
    assert removed == {"removed": True}
    assert sidecar.post("/cache/find", json={"session_id": "s2", "text": "jane roe"}).json()["matches"] == []


def test_cache_export_import_clear(sidecar):
    sidecar.post("/cache/add", json={
        "session_id": "s3", "value": "Jane Roe", "maskedValue": "[NAME]", "type": "NAME",
    })
    exported = sidecar.get("/cache/export", params={"session_id": "s3"}).json()
    assert len(exported) == 1

    imported = sidecar.post("/cache/import", json={"session_id": "s4", "payload": exported}).json()
    assert imported == {"imported": 1}
    assert sidecar.get("/cache/export", params={"session_id": "s4"}).json() == exported

    bad = sidecar.post("/cache/import", json={"session_id": "s4", "payload": "garbage"})
    assert bad.status_code == 400
    assert sidecar.get("/cache/stats", params={"session_id": "s4"}).json()["totalItems"] == 1

    sidecar.post("/cache/clear", json={"session_id": "s4"})
    assert sidecar.get("/cache/stats", params={"session_id": "s4"}).json()["totalItems"] == 0


def test_unknown_route(sidecar):
    assert sidecar.get("/nope").status_code == 404
    assert sidecar.post("/nope", json={}).status_code == 404


def test_rate_limit():
    server, base = _start(SidecarState(Redactor(), MemorySessionStore(), RateLimiter(1, 60)))
    try:
        with httpx.Client(base_url=base, timeout=10) as client:
            body = {"session_id": "busy", "type": "SSN", "value": "123-45-6789"}
            assert client.post("/mask", json=body).status_code == 200
            limited = client.post("/mask", json=body)
            assert limited.status_code == 429
            assert int(limited.headers["Retry-After"]) >= 1
            # Other sessions have their own budget
            assert client.post("/mask", json={**body, "session_id": "calm"}).status_code == 200
    finally:
        server.shutdown()
        server.server_close()


# ── CLI ──────────────────────────────────────────────────────────────

@pytest.fixture
def cli_env(monkeypatch):
    for name in ("PII_SWEEP_CONFIG", "PII_SWEEP_LLM_API_KEY", "PII_SWEEP_SEMANTIC_URL"):
        monkeypatch.delenv(name, raising=False)


def _run(monkeypatch, argv, stdin=""):
    monkeypatch.setattr(sys, "stdin", io.StringIO(stdin))
    return main(argv)


def test_cli_detect(cli_env, monkeypatch, capsys):
    assert _run(monkeypatch, ["--no-llm", "detect"], "SSN: 123-45-6789") == 0
    data = json.loads(capsys.readouterr().out)
    assert data["count"] == 1
    assert data["matches"][0]["maskedValue"] == "***-**-6789"


def test_cli_mask(cli_env, monkeypatch, capsys):
    assert _run(monkeypatch, ["mask", "--type", "SSN", "123-45-6789"]) == 0
    assert capsys.readouterr().out.strip() == "***-**-6789"


def test_cli_redact_and_cache(cli_env, monkeypatch, capsys, tmp_path):
    common = ["--db", str(tmp_path / "cache.db"), "--session-id", "s1"]
    assert _run(monkeypatch, common + ["--no-llm", "redact-text"], "Call 555-234-5678") == 0
    assert json.loads(capsys.readouterr().out)["confirmed"] == 0
    assert _run(monkeypatch, common + ["cache", "stats"]) == 0
    assert json.loads(capsys.readouterr().out)["totalItems"] == 0

    assert _run(monkeypatch, common + ["--no-llm", "redact-text", "--confirm"], "Call 555-234-5678") == 0
    assert json.loads(capsys.readouterr().out)["text"] == "Call (***) ***-5678"

    assert _run(monkeypatch, common + ["cache", "stats"]) == 0
    assert json.loads(capsys.readouterr().out)["totalItems"] == 1

    assert _run(monkeypatch, common + ["cache", "export"]) == 0
    exported = capsys.readouterr().out

    other = ["--db", str(tmp_path / "cache.db"), "--session-id", "s2"]
    assert _run(monkeypatch, other + ["cache", "import"], exported) == 0
    assert _run(monkeypatch, other + ["cache", "sessions"]) == 0
    assert sorted(json.loads(capsys.readouterr().out)) == ["s1", "s2"]


def test_cli_input_errors_exit_2(cli_env, monkeypatch, tmp_path):
    assert _run(monkeypatch, ["--no-llm", "detect"], "") == 2
    db = ["--db", str(tmp_path / "cache.db")]
    assert _run(monkeypatch, db + ["cache", "import"], "garbage") == 2


def test_cli_preset(cli_env, monkeypatch, capsys):
    text = "SSN: 123-45-6789, email alice@example.com"
    assert _run(monkeypatch, ["--no-llm", "--preset", "ssn-financial", "detect"], text) == 0
    data = json.loads(capsys.readouterr().out)
    assert [m["type"] for m in data["matches"]] == ["SSN"]

    assert _run(monkeypatch, ["--no-llm", "--preset", "contact-info", "--types", "SSN", "detect"], text) == 0
    data = json.loads(capsys.readouterr().out)
    assert [m["type"] for m in data["matches"]] == ["SSN"]


def test_cli_unknown_preset(cli_env, monkeypatch):
    with pytest.raises(SystemExit):
        _run(monkeypatch, ["--preset", "everything", "detect"], "x")
