"""
Parley - Retrieval Verification
================================
Runs one ``retrieve_context`` call against the configured LanceDB tables
and prints the ranked hits, per-partition counts and the exact context
block a bot would receive.

Usage:
    python -m parley.scripts.verify_rag --bot-id bot_42 --user-id u_7 "can I get a refund?"
    python -m parley.scripts.verify_rag --bot-id bot_42 --user-id u_7 --top-k 3 --min-similarity 0.5 "pricing"
"""

from __future__ import annotations

import argparse
import asyncio
import time

from parley.config.settings import settings
from parley.src.core.embedder import GeminiEmbedder
from parley.src.core.models import ALL_PARTITIONS, RAGContext, RetrievalOptions
from parley.src.core.rag_engine import RetrievalEngine
from parley.src.database.knowledge_store import KnowledgeStore
from parley.src.database.preference_store import PreferenceStore
from parley.src.database.vector_store import connect_database


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="verify_rag", description="Parley — Run a retrieval query and show the assembled context.")
    parser.add_argument("query", help="User message to retrieve context for.")
    parser.add_argument("--bot-id", required=True)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--top-k", type=int, default=settings.RAG_TOP_K)
    parser.add_argument("--min-similarity", type=float, default=settings.RAG_MIN_SIMILARITY)
    parser.add_argument("--only", nargs="+", choices=ALL_PARTITIONS, default=list(ALL_PARTITIONS), help="Partitions to search.")
    return parser.parse_args(argv)


async def _retrieve(args: argparse.Namespace) -> RAGContext:
    embedder = GeminiEmbedder()
    db = connect_database(settings.LANCEDB_PATH)
    engine = RetrievalEngine(KnowledgeStore(db, embedder), PreferenceStore(db, embedder), embedder)
    options = RetrievalOptions(top_k=args.top_k, include_categories=args.only, min_similarity=args.min_similarity)
    return await engine.retrieve_context(args.query, args.user_id, args.bot_id, options)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)

    t_start = time.perf_counter()
    context = asyncio.run(_retrieve(args))
    elapsed_ms = (time.perf_counter() - t_start) * 1000

    print(f"Query: {args.query}")
    print("=" * 60)
    for i, result in enumerate(context.results, 1):
        print(f"\n--- Result {i} ---")
        print(f"  Partition:  {'user_preferences' if result.is_user_preference else result.category}")
        print(f"  Title:      {result.title}")
        print(f"  Similarity: {result.similarity:.4f}")
        print(f"  Content:    {result.content}")

    print("\n" + "=" * 60)
    print("CATEGORY COUNTS:")
    for name, count in context.categories.model_dump().items():
        print(f"  {name:<18}: {count}")

    print("\n" + "=" * 60)
    print("FORMATTED CONTEXT:\n")
    print(context.formatted_context)
    print("\n" + "=" * 60)
    print(f"{context.total_results} result(s) in {elapsed_ms:.1f}ms")


if __name__ == "__main__":
    main()
