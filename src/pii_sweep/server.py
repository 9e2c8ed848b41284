"""HTTP sidecar server for pii-sweep.

Runs as a lightweight HTTP server on localhost so a document pipeline can
call detection over HTTP instead of spawning a subprocess per request.

Endpoints:
    GET  /health          — Health check
    POST /detect          — Detect PII in {"text": ...}
    POST /redact          — Detect and mask; {"confirm": true} also caches the result
    POST /mask            — Mask one {"type", "value"}
    POST /cache/add       — Record a confirmed redaction
    POST /cache/find      — Cached values occurring in {"text": ...}
    POST /cache/remove    — Drop one record by id
    POST /cache/clear     — Drop a session's records
    POST /cache/import    — Load an exported payload
    GET  /cache/export    — Export a session (?session_id=...)
    GET  /cache/stats     — Session statistics (?session_id=...)

All endpoints expect/return JSON.  Requests carry "session_id" in the body
(POST) or query string (GET); each session is rate limited separately.
/detect and /redact take either "types" or a named "preset" (ssn-financial,
all-pii, contact-info, financial-only).
"""

from __future__ import annotations
import json
import logging
import os
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .cache import DEFAULT_MAX_SIZE, SessionCache, SessionStore
from .config import create_rate_limiter, create_redactor, create_store, load_config, load_from_yaml
from .errors import CacheFormatError, InputError, RateLimitExceeded
from .llm_client import GenerativeClient
from .masking import mask_entity
from .rate_limit import RateLimiter
from .redactor import Redactor, resolve_types
from .types import DocumentContext

logger = logging.getLogger(__name__)

DEFAULT_PORT = int(os.environ.get("PII_SWEEP_PORT", "18792"))


class SidecarState:
    """Everything the handler shares across requests."""

    def __init__(
        self,
        redactor: Redactor,
        store: SessionStore,
        limiter: RateLimiter,
        *,
        max_cache_size: int = DEFAULT_MAX_SIZE,
    ) -> None:
        self.redactor = redactor
        self.store = store
        self.limiter = limiter
        self.max_cache_size = max_cache_size

    @classmethod
    def from_config(cls, config: dict[str, Any] | None = None) -> SidecarState:
        cfg = load_config(config) if config is None or "cache_backend" not in config else config
        return cls(
            create_redactor(cfg),
            create_store(cfg),
            create_rate_limiter(cfg),
            max_cache_size=cfg["cache_max_size"],
        )

    def cache(self, session_id: str) -> SessionCache:
        return SessionCache(session_id, self.store, max_size=self.max_cache_size)

    def model_info(self) -> dict[str, Any] | None:
        llm = self.redactor.llm
        return llm.get_model_info() if isinstance(llm, GenerativeClient) else None


def _document_context(body: dict[str, Any]) -> DocumentContext | None:
    index_id = body.get("index_id")
    document_id = body.get("document_id")
    if index_id and document_id:
        return DocumentContext(index_id=str(index_id), document_id=str(document_id))
    return None


def _types(body: dict[str, Any]) -> Any:
    preset = body.get("preset")
    if preset is not None and not isinstance(preset, str):
        raise InputError("preset must be a string")
    return resolve_types(body.get("types"), preset)


def _match_dict(match) -> dict[str, Any]:
    return {
        "id": match.cached.id,
        "type": match.cached.type.value,
        "maskedValue": match.cached.masked_value,
        "startIndex": match.span.start,
        "endIndex": match.span.end,
    }


class PIIHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the pii-sweep sidecar."""

    state: SidecarState

    def _read_json(self) -> dict[str, Any]:
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length).decode("utf-8")
        if not body:
            return {}
        try:
            data = json.loads(body)
        except json.JSONDecodeError as e:
            raise InputError(f"invalid JSON body: {e.msg}") from None
        if not isinstance(data, dict):
            raise InputError("request body must be a JSON object")
        return data

    def _respond(self, status: int, data: Any, headers: dict[str, str] | None = None) -> None:
        body = json.dumps(data, ensure_ascii=False).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        for name, value in (headers or {}).items():
            self.send_header(name, value)
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("%s " + format, self.address_string(), *args)

    def _limit(self, session_id: str) -> None:
        self.state.limiter.enforce(session_id)

    def _dispatch(self, handler) -> None:
        try:
            status, data = handler()
            self._respond(status, data)
        except RateLimitExceeded as e:
            self._respond(429, {"error": str(e)}, {"Retry-After": str(max(1, int(e.reset_in + 0.999)))})
        except (InputError, CacheFormatError) as e:
            self._respond(400, {"error": str(e)})
        except Exception:
            logger.exception("request to %s failed", self.path)
            self._respond(500, {"error": "internal error"})

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        query = parse_qs(url.query)
        session_id = query.get("session_id", ["default"])[0]

        def handle() -> tuple[int, Any]:
            if url.path == "/health":
                return 200, {
                    "status": "ok",
                    "sessions": len(self.state.store.list_sessions()),
                    "model": self.state.model_info(),
                }
            if url.path == "/cache/export":
                self._limit(session_id)
                return 200, json.loads(self.state.cache(session_id).export())
            if url.path == "/cache/stats":
                self._limit(session_id)
                return 200, self.state.cache(session_id).stats()
            return 404, {"error": "not found"}

        self._dispatch(handle)

    def do_POST(self) -> None:
        def handle() -> tuple[int, Any]:
            body = self._read_json()
            session_id = str(body.get("session_id") or "default")
            routes = {
                "/detect": self._detect,
                "/redact": self._redact,
                "/mask": self._mask,
                "/cache/add": self._cache_add,
                "/cache/find": self._cache_find,
                "/cache/remove": self._cache_remove,
                "/cache/clear": self._cache_clear,
                "/cache/import": self._cache_import,
            }
            route = routes.get(urlsplit(self.path).path)
            if route is None:
                return 404, {"error": "not found"}
            self._limit(session_id)
            return 200, route(body, session_id)

        self._dispatch(handle)

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _detect(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        entities = self.state.redactor.detect_all(
            body.get("text"), _types(body), _document_context(body))
        return {"count": len(entities), "matches": [e.to_dict() for e in entities]}

    def _redact(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        cache = self.state.cache(session_id)
        plan = self.state.redactor.redact(body.get("text"), cache, _types(body), _document_context(body))
        # Unreviewed plans stay out of the cache unless the caller accepts them as-is
        confirmed = plan.confirm(cache) if body.get("confirm") is True else 0
        return {
            "text": plan.apply(),
            "entities": [e.to_dict() for e in plan.entities],
            "cachedMatches": [_match_dict(m) for m in plan.cached_matches],
            "confirmed": confirmed,
        }

    def _mask(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        value = body.get("value")
        if not isinstance(value, str):
            raise InputError("value is required")
        return {"maskedValue": mask_entity(body.get("type", ""), value, body.get("override"))}

    def _cache_add(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        value = body.get("value")
        masked = body.get("maskedValue")
        if not isinstance(value, str) or not isinstance(masked, str):
            raise InputError("value and maskedValue are required")
        entry = self.state.cache(session_id).add(value, masked, body.get("type", ""))
        return entry.to_dict()

    def _cache_find(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        text = body.get("text")
        if not isinstance(text, str):
            raise InputError("text is required")
        matches = self.state.cache(session_id).find_cached_matches(text)
        return {"matches": [_match_dict(m) for m in matches]}

    def _cache_remove(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        return {"removed": self.state.cache(session_id).remove(str(body.get("id", "")))}

    def _cache_clear(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        self.state.cache(session_id).clear()
        return {"status": "cleared", "session_id": session_id}

    def _cache_import(self, body: dict[str, Any], session_id: str) -> dict[str, Any]:
        payload = body.get("payload")
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        count = self.state.cache(session_id).import_(payload, merge=bool(body.get("merge", True)))
        return {"imported": count}


def make_server(state: SidecarState, host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> HTTPServer:
    """Bind a server whose handler shares ``state``."""
    handler = type("BoundPIIHandler", (PIIHandler,), {"state": state})
    return HTTPServer((host, port), handler)


def serve(config: dict[str, Any] | None = None, port: int = DEFAULT_PORT) -> None:
    """Start the pii-sweep HTTP sidecar."""
    state = SidecarState.from_config(config)
    server = make_server(state, port=port)
    logger.info("pii-sweep sidecar listening on http://127.0.0.1:%d", server.server_port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("shutting down")
    finally:
        server.server_close()


def main(argv: list[str] | None = None) -> None:
    import argparse
    parser = argparse.ArgumentParser(description="pii-sweep HTTP sidecar")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--config", default=os.environ.get("PII_SWEEP_CONFIG"), help="YAML config file")
    parser.add_argument("--db", default=None, help="Use a SQLite session store at this path")
    parser.add_argument("--log-level", default=os.environ.get("PII_SWEEP_LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    cfg = load_from_yaml(args.config) if args.config else load_config({})
    if args.db:
        cfg["cache_backend"] = "sqlite"
        cfg["cache_path"] = args.db
    serve(cfg, port=args.port)


if __name__ == "__main__":
    main()
