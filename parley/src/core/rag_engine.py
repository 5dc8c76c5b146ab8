"""
Parley - Retrieval Engine
==========================
Builds the grounding context for one bot reply: embeds the user's query,
fans out similarity searches across the bot's knowledge categories and
the user's learned preferences, merges and ranks the hits, and renders
them into a deterministic text block.

Architecture
------------
``RetrievalEngine``
    Stateless orchestrator.  Flow:
        1. Per-partition quota → ``ceil(top_k / len(include_categories))``
        2. Embed the query once, shared by every partition search
        3. Fan out → one search per included knowledge category and,
           if requested, one preference search, all concurrent
        4. Flatten → drop hits below ``min_similarity``
        5. Global sort by descending similarity (ties by id)
        6. Truncate to ``top_k``
        7. Count per partition, format, bundle into ``RAGContext``

``format_context_for_llm``
    Groups a ranked list into fixed sections (product information,
    business rules, instructions, user preferences), preserving rank
    order inside each section.

Quota-then-merge
----------------
Each partition is capped *before* the global rank, so a rich partition
can leave the final list shorter than ``top_k`` even when more qualifying
hits exist.  This is the deployed behaviour and is kept deliberately.

Failure policy
--------------
Retrieval is an enhancement, never a prerequisite for a reply: any error
during fan-out, ranking or formatting is logged and converted into the
empty context (``NO_CONTEXT_FOUND``, zero counts).

Usage:
    engine  = RetrievalEngine(knowledge_store, preference_store)
    context = await engine.retrieve_context("can I get a refund?", user_id, bot_id)
"""

from __future__ import annotations

import asyncio
import math
import time

from parley.config.prompt_templates import INFERRED_TAG, KNOWLEDGE_ITEM_TEMPLATE, NO_CONTEXT_FOUND, PREFERENCE_ITEM_TEMPLATE, SECTION_HEADERS, STATED_TAG
from parley.src.core.embedder import GeminiEmbedder
from parley.src.core.models import KNOWLEDGE_CATEGORIES, USER_PREFERENCE_PARTITION, CategoryCounts, RAGContext, RetrievalOptions, SearchResult
from parley.src.database.knowledge_store import KnowledgeStore
from parley.src.database.preference_store import PreferenceStore
from parley.src.utils.logger import get_logger

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  CONTEXT FORMATTER
# ══════════════════════════════════════════════════════════════════════


def _percent(similarity: float) -> int:
    """Similarity as a whole percent, halves rounded up."""
    return math.floor(similarity * 100 + 0.5)


def group_by_partition(results: list[SearchResult]) -> dict[str, list[SearchResult]]:
    """
    Split a ranked list into the four partitions, keeping relative order.

    Preference hits carry a preference source as ``category`` and the
    fixed preference title.  A knowledge entry that happens to use the same
    title still lands in its own category.
    """
    groups: dict[str, list[SearchResult]] = {name: [] for name in SECTION_HEADERS}
    for result in results:
        if result.is_user_preference:
            groups[USER_PREFERENCE_PARTITION].append(result)
        elif result.category in groups:
            groups[result.category].append(result)
    return groups


def format_context_for_llm(results: list[SearchResult]) -> str:
    """
    Render ranked results as the context block for the system prompt.

    Empty input yields ``NO_CONTEXT_FOUND``.  Sections without items are
    omitted entirely.  Output is deterministic for a given input list.
    """
    if not results:
        return NO_CONTEXT_FOUND

    groups = group_by_partition(results)
    parts: list[str] = []

    for partition, header in SECTION_HEADERS.items():
        items = groups[partition]
        if not items:
            continue

        parts.append(header + "\n")
        if partition == USER_PREFERENCE_PARTITION:
            for index, item in enumerate(items, 1):
                tag = STATED_TAG if item.category == "explicit" else INFERRED_TAG
                parts.append(PREFERENCE_ITEM_TEMPLATE.format(index=index, content=item.content, tag=tag))
            parts.append("\n")
        else:
            for index, item in enumerate(items, 1):
                parts.append(KNOWLEDGE_ITEM_TEMPLATE.format(index=index, title=item.title, percent=_percent(item.similarity), content=item.content))

    return "".join(parts).rstrip()


def count_categories(results: list[SearchResult]) -> CategoryCounts:
    groups = group_by_partition(results)
    return CategoryCounts(**{name: len(items) for name, items in groups.items()})


def empty_context() -> RAGContext:
    return RAGContext(results=[], formatted_context=NO_CONTEXT_FOUND, total_results=0, categories=CategoryCounts())


# ══════════════════════════════════════════════════════════════════════
#  RETRIEVAL ENGINE
# ══════════════════════════════════════════════════════════════════════


class RetrievalEngine:
    """
    Fan-out / merge / rank orchestrator over the two vector stores.

    Parameters
    ----------
    knowledge_store
        Per-bot ``KnowledgeStore``.
    preference_store
        Per-user ``PreferenceStore``.
    embedder
        Query embedder.  Defaults to the knowledge store's embedder so
        query and stored vectors always come from the same model.
    """

    __slots__ = ("_knowledge", "_preferences", "_embedder")

    def __init__(self, knowledge_store: KnowledgeStore, preference_store: PreferenceStore, embedder: GeminiEmbedder | None = None) -> None:
        self._knowledge = knowledge_store
        self._preferences = preference_store
        self._embedder = embedder or knowledge_store.embedder


    async def retrieve_context(self, query: str, user_id: str, bot_id: str, options: RetrievalOptions | None = None) -> RAGContext:
        """
        Produce the ranked, formatted grounding context for *query*.

        Never raises: failures are logged and yield ``empty_context()``.
        """
        t_start = time.perf_counter()
        try:
            opts = options or RetrievalOptions()

            # ── 1–3. Embed once, fan out concurrently ──────────────────
            candidates = await self._fan_out(query, user_id, bot_id, opts)

            # ── 4–6. Filter, rank, truncate ────────────────────────────
            top_results = self._rank(candidates, opts.min_similarity, opts.top_k)

            # ── 7. Count + format ──────────────────────────────────────
            context = RAGContext(results=top_results, formatted_context=format_context_for_llm(top_results), total_results=len(top_results), categories=count_categories(top_results))
        except Exception:
            logger.exception("[RAG] Retrieval failed for bot=%s user=%s — using empty context.", bot_id, user_id)
            return empty_context()

        total_ms = (time.perf_counter() - t_start) * 1000
        logger.info("[RAG] %d candidate(s) → %d result(s) in %.1fms %s", len(candidates), context.total_results, total_ms, context.categories.model_dump())
        return context


    async def _fan_out(self, query: str, user_id: str, bot_id: str, opts: RetrievalOptions) -> list[SearchResult]:
        """Run every partition search concurrently and flatten the hits."""
        included = opts.include_categories
        if not included:
            return []

        per_partition = math.ceil(opts.top_k / len(included))
        query_vector = await self._embedder.embed(query)

        searches = [self._knowledge.search(bot_id, query_vector, category, per_partition) for category in KNOWLEDGE_CATEGORIES if category in included]
        if USER_PREFERENCE_PARTITION in included:
            searches.append(self._preferences.search(user_id, query_vector, per_partition))

        logger.debug("[RAG] Fan-out: %d partition search(es), quota %d each.", len(searches), per_partition)
        partition_results = await asyncio.gather(*searches)
        return [hit for hits in partition_results for hit in hits]


    @staticmethod
    def _rank(candidates: list[SearchResult], min_similarity: float, top_k: int) -> list[SearchResult]:
        """Drop hits below the floor, sort globally, keep the first *top_k*."""
        kept = [c for c in candidates if c.similarity >= min_similarity]
        kept.sort(key=lambda c: (-c.similarity, c.id))
        return kept[:top_k]
