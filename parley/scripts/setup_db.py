"""
Parley - Database Setup & Knowledge Import Script
==================================================
CLI entry point that orchestrates:
    1. Validate configuration (``GOOGLE_API_KEY`` required, fail-fast).
    2. Open or create the knowledge and preference tables
       (optionally dropping them first).
    3. Optionally bulk-import a JSON file of knowledge entries for one bot.
    4. Print a structured execution summary with timing breakdown.

Import file format — a JSON list of objects::

    [{"category": "product_info", "title": "Premium Plan",
      "content": "Premium costs $29/month ...", "metadata": {"sku": "P1"}}]

Flags:
    --drop          Drop both tables before opening them again.
    --drop-only     Drop both tables and exit.
    --import FILE   Bulk-import knowledge entries from FILE (needs --bot-id).
    --bot-id ID     Owner bot for imported entries.

Usage:
    python -m parley.scripts.setup_db
    python -m parley.scripts.setup_db --drop --import knowledge.json --bot-id bot_42
    python -m parley.scripts.setup_db --drop-only
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from pathlib import Path


# ── CLI Argument Parsing ───────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="setup_db", description="Parley — Initialise the vector tables and optionally import bot knowledge.")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--drop", action="store_true", default=False, help="Drop both tables before opening them again.")
    mode.add_argument("--drop-only", action="store_true", default=False, help="Drop both tables and exit.")
    parser.add_argument("--import", dest="import_file", type=Path, default=None, metavar="FILE", help="JSON list of knowledge entries to import.")
    parser.add_argument("--bot-id", default=None, help="Bot that owns the imported entries.")

    args = parser.parse_args(argv)
    if args.import_file is not None and not args.bot_id:
        parser.error("--import requires --bot-id")
    if args.drop_only and args.import_file is not None:
        parser.error("--drop-only cannot be combined with --import")
    return args


# ── Main Orchestration ─────────────────────────────────────────────────

def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    t_start = time.perf_counter()

    # ── 0. Load settings + .env (timed) ────────────────────────────────
    t_settings = time.perf_counter()
    try:
        from parley.config.settings import settings
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        sys.exit(1)
    settings_ms = (time.perf_counter() - t_settings) * 1000

    # Logger reads settings.ENV, so it is imported only after settings load
    from parley.src.utils.logger import get_logger
    logger = get_logger(__name__)

    logger.info("Settings loaded in %.1fms", settings_ms)
    _print_header(settings)

    # ── 1. Read the import file before touching the database ───────────
    payloads: list[dict] = []
    if args.import_file is not None:
        try:
            payloads = _read_import_file(args.import_file)
        except (OSError, ValueError) as exc:
            logger.error("Cannot read import file %s: %s", args.import_file, exc)
            sys.exit(1)
        logger.info("Loaded %d entr(ies) from %s", len(payloads), args.import_file)

    # ── 2. Initialise embedder (timed) ─────────────────────────────────
    from parley.src.core.embedder import GeminiEmbedder

    t_embedder = time.perf_counter()
    logger.info("Initialising embedding model: %s", settings.EMBEDDING_MODEL)
    try:
        embedder = GeminiEmbedder()
    except Exception:
        logger.exception("Failed to initialise embedding model.")
        sys.exit(1)
    embedder_ms = (time.perf_counter() - t_embedder) * 1000

    # ── 3. Open tables (timed) ─────────────────────────────────────────
    from parley.src.database.knowledge_store import KnowledgeStore
    from parley.src.database.preference_store import PreferenceStore
    from parley.src.database.vector_store import connect_database

    t_lancedb = time.perf_counter()
    db = connect_database(settings.LANCEDB_PATH)
    knowledge = KnowledgeStore(db, embedder)
    preferences = PreferenceStore(db, embedder)

    if args.drop or args.drop_only:
        logger.warning("Dropping tables '%s' and '%s' as requested.", knowledge.table_name, preferences.table_name)
        knowledge.drop_table()
        preferences.drop_table()

        if args.drop_only:
            lancedb_ms = (time.perf_counter() - t_lancedb) * 1000
            logger.info("--drop-only: Tables dropped. Exiting.")
            _print_footer(0, 0, 0, time.perf_counter() - t_start, settings_ms, embedder_ms, lancedb_ms)
            return

        knowledge = KnowledgeStore(db, embedder)
        preferences = PreferenceStore(db, embedder)
    lancedb_ms = (time.perf_counter() - t_lancedb) * 1000
    logger.info("Tables ready — %r, %r", knowledge, preferences)

    # ── 4. Bulk import ─────────────────────────────────────────────────
    imported = 0
    if payloads:
        from pydantic import ValidationError

        from parley.src.core.knowledge_service import KnowledgeService

        service = KnowledgeService(knowledge)
        try:
            imported = len(asyncio.run(service.bulk_import(args.bot_id, payloads)))
        except ValidationError as exc:
            logger.error("Import file rejected, nothing was written:\n%s", exc)
            sys.exit(1)
        except Exception:
            logger.exception("Import failed part-way; earlier batches remain stored.")
            sys.exit(1)

    # ── 5. Print execution summary ─────────────────────────────────────
    elapsed = time.perf_counter() - t_start
    _print_footer(imported, knowledge.count(), preferences.count(), elapsed, settings_ms, embedder_ms, lancedb_ms)


def _read_import_file(path: Path) -> list[dict]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("expected a JSON list of knowledge entries")
    return data


# ── Pretty-print helpers ──────────────────────────────────────────────

def _print_header(settings: object) -> None:
    api_key_val = settings.GOOGLE_API_KEY.get_secret_value()  # type: ignore[attr-defined]
    masked = f"****{api_key_val[-4:]}" if len(api_key_val) > 4 else "****"

    print()
    print("=" * 60)
    print("  PARLEY — Vector Table Setup & Knowledge Import")
    print("=" * 60)
    print(f"  Environment  : {settings.ENV}")                            # type: ignore[attr-defined]
    print(f"  Embedding    : {settings.EMBEDDING_MODEL} ({settings.EMBEDDING_DIMENSIONS}-d)")  # type: ignore[attr-defined]
    print(f"  LanceDB path : {settings.LANCEDB_PATH}")                   # type: ignore[attr-defined]
    print(f"  Tables       : {settings.KNOWLEDGE_TABLE_NAME}, {settings.PREFERENCE_TABLE_NAME}")  # type: ignore[attr-defined]
    print(f"  API Key      : {masked}")
    print("=" * 60)
    print()


def _print_footer(imported: int, knowledge_rows: int, preference_rows: int, elapsed: float, settings_ms: float, embedder_ms: float, lancedb_ms: float) -> None:
    startup_ms = settings_ms + embedder_ms + lancedb_ms
    processing_s = elapsed - (startup_ms / 1000)

    print()
    print("=" * 60)
    print("  EXECUTION SUMMARY")
    print("-" * 60)
    print(f"  Entries imported     : {imported}")
    print(f"  Knowledge rows       : {knowledge_rows}")
    print(f"  Preference rows      : {preference_rows}")
    print("-" * 60)
    print("  TIMING BREAKDOWN")
    print("-" * 60)
    print(f"  Settings + .env load : {settings_ms:>8.1f}ms")
    print(f"  Embedder init        : {embedder_ms:>8.1f}ms")
    print(f"  LanceDB tables       : {lancedb_ms:>8.1f}ms")
    print(f"  Startup time (total) : {startup_ms:>8.1f}ms")
    print(f"  Processing time      : {processing_s:>8.2f}s")
    print(f"  Total elapsed        : {elapsed:>8.2f}s")
    print("=" * 60)
    print()


# ── Entry point ────────────────────────────────────────────────────────

if __name__ == "__main__":
    main()
