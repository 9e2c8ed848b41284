"""CLI interface for pii-sweep.

Usage:
    # Detect PII (stdin: plain text, stdout: JSON entity list)
    echo 'SSN: 123-45-6789' | python -m pii_sweep.cli --types SSN,EMAIL detect

    # Redact text and remember the redactions for this session
    cat letter.txt | python -m pii_sweep.cli --session-id sess123 redact-text --confirm

    # Only contact details
    cat letter.txt | python -m pii_sweep.cli --preset contact-info redact-text

    # Mask a single value
    python -m pii_sweep.cli mask --type PHONE 555-123-4567

    # Session cache maintenance
    python -m pii_sweep.cli --session-id sess123 cache export > cache.json
    python -m pii_sweep.cli --session-id sess123 cache import --replace < cache.json

The session cache is kept in SQLite so it survives across calls.
"""

from __future__ import annotations
import argparse
import json
import logging
import os
import sys

from .cache import SessionCache
from .cache_sqlite import SqliteSessionStore
from .config import DEFAULT_DB, create_redactor, load_config, load_from_yaml
from .errors import CacheFormatError, InputError
from .masking import mask_entity
from .patterns import PRESETS
from .redactor import Redactor
from .types import DocumentContext


def _load_cfg(args: argparse.Namespace) -> dict:
    cfg = load_from_yaml(args.config) if args.config else load_config({})
    if args.no_llm:
        cfg["llm_api_key"] = None
    if args.luhn:
        cfg["luhn_check"] = True
    if args.preset:
        cfg["preset"] = args.preset
        cfg["types"] = None
    return cfg


def _build_redactor(args: argparse.Namespace) -> Redactor:
    return create_redactor(_load_cfg(args))


def _types(args: argparse.Namespace) -> list[str] | None:
    return [t for t in args.types.split(",") if t] if args.types else None


def _document_context(args: argparse.Namespace) -> DocumentContext | None:
    if args.index_id and args.document_id:
        return DocumentContext(index_id=args.index_id, document_id=args.document_id)
    return None


def _open_cache(args: argparse.Namespace) -> tuple[SessionCache, SqliteSessionStore]:
    store = SqliteSessionStore(db_path=args.db)
    return SessionCache(args.session_id, store), store


def _dump(data: object) -> None:
    json.dump(data, sys.stdout, indent=2, ensure_ascii=False)
    sys.stdout.write("\n")


def cmd_detect(args: argparse.Namespace) -> None:
    """Detect PII in plain text on stdin."""
    redactor = _build_redactor(args)
    text = sys.stdin.read()
    entities = redactor.detect_all(text, _types(args), _document_context(args))
    _dump({"count": len(entities), "matches": [e.to_dict() for e in entities]})


def cmd_redact_text(args: argparse.Namespace) -> None:
    """Redact plain text on stdin.  The session cache is updated only with --confirm."""
    redactor = _build_redactor(args)
    cache, store = _open_cache(args)
    text = sys.stdin.read()
    try:
        plan = redactor.redact(text, cache, _types(args), _document_context(args))
        confirmed = plan.confirm(cache) if args.confirm else 0
    finally:
        store.close()

    # Output both redacted text and entity metadata
    _dump({
        "text": plan.apply(),
        "entities": [e.to_dict() for e in plan.entities],
        "cachedMatches": [
            {"id": m.cached.id, "type": m.cached.type.value,
             "startIndex": m.span.start, "endIndex": m.span.end}
            for m in plan.cached_matches
        ],
        "confirmed": confirmed,
    })


def cmd_mask(args: argparse.Namespace) -> None:
    """Print the masked form of one value."""
    sys.stdout.write(mask_entity(args.type, args.value, args.override) + "\n")


def cmd_cache(args: argparse.Namespace) -> None:
    """Session cache maintenance."""
    cache, store = _open_cache(args)
    try:
        if args.action == "export":
            sys.stdout.write(cache.export() + "\n")
        elif args.action == "import":
            count = cache.import_(sys.stdin.read(), merge=not args.replace)
            sys.stderr.write(f"Imported {count} records into session {args.session_id}\n")
        elif args.action == "stats":
            _dump(cache.stats())
        elif args.action == "sessions":
            _dump(store.list_sessions())
        elif args.action == "clear":
            cache.clear()
            sys.stderr.write(f"Cleared session {args.session_id}\n")
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pii-sweep",
        description="Multi-pass PII detection and masking",
    )
    parser.add_argument("--config", default=os.environ.get("PII_SWEEP_CONFIG"), help="YAML config file")
    parser.add_argument("--db", default=DEFAULT_DB, help="SQLite session cache path")
    parser.add_argument("--session-id", default="default", help="Session ID")
    parser.add_argument("--types", default="", help="Comma-separated PII types to detect")
    parser.add_argument(
        "--preset", default=None, choices=sorted(PRESETS), help="Named type filter (ignored with --types)")
    parser.add_argument("--no-llm", action="store_true", help="Pattern and occurrence passes only")
    parser.add_argument("--luhn", action="store_true", help="Require a Luhn check for card numbers")
    parser.add_argument("--index-id", default="", help="Semantic index to search")
    parser.add_argument("--document-id", default="", help="Document ID within the semantic index")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("PII_SWEEP_LOG_LEVEL", "WARNING"),
        help="Logging level (stderr)",
    )

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("detect", help="Detect PII (text on stdin)")
    redact = sub.add_parser("redact-text", help="Redact plain text (stdin)")
    redact.add_argument(
        "--confirm", action="store_true", help="Accept every detection and remember it for this session")
    mask = sub.add_parser("mask", help="Mask a single value")
    mask.add_argument("--type", required=True, help="PII type")
    mask.add_argument("--override", default=None, help="Replacement for CUSTOM values")
    mask.add_argument("value")
    cache = sub.add_parser("cache", help="Session cache maintenance")
    cache.add_argument("action", choices=["export", "import", "stats", "sessions", "clear"])
    cache.add_argument("--replace", action="store_true", help="Import replaces instead of merging")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    cmds = {
        "detect": cmd_detect,
        "redact-text": cmd_redact_text,
        "mask": cmd_mask,
        "cache": cmd_cache,
    }
    try:
        cmds[args.command](args)
    except (InputError, CacheFormatError) as e:
        sys.stderr.write(f"error: {e}\n")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
