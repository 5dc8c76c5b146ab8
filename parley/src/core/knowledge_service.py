"""
Parley - Knowledge Service
===========================
Validated administrative boundary over ``KnowledgeStore``: single-entry
CRUD plus batched bulk import.

Every input passes through ``KnowledgeCreate`` / ``KnowledgeUpdate``
before the embedder or storage sees it, so a ``pydantic.ValidationError``
is the only failure an invalid payload can produce.  Unlike retrieval,
administrative operations surface storage and embedding errors to the
caller.

Usage:
    service = KnowledgeService(knowledge_store)
    entry   = await service.add(bot_id, {"category": "product_info", ...})
    entries = await service.bulk_import(bot_id, json.loads(path.read_text()))
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Sequence

from parley.config.settings import settings
from parley.src.core.models import KNOWLEDGE_CATEGORIES, KnowledgeCreate, KnowledgeEntry, KnowledgeUpdate, is_knowledge_category
from parley.src.database.knowledge_store import KnowledgeStore
from parley.src.utils.logger import get_logger

logger = get_logger(__name__)


class KnowledgeService:
    """
    CRUD and bulk import for one deployment's knowledge table.

    Parameters
    ----------
    store
        An initialised ``KnowledgeStore`` (injected).
    batch_size
        Entries embedded concurrently per bulk-import batch.
    pause_seconds
        Pause between bulk-import batches, to stay under provider rate limits.
    """

    __slots__ = ("_store", "_batch_size", "_pause_seconds")

    def __init__(self, store: KnowledgeStore, batch_size: int | None = None, pause_seconds: float | None = None) -> None:
        self._store = store
        self._batch_size = batch_size or settings.BULK_IMPORT_BATCH_SIZE
        self._pause_seconds = settings.BULK_IMPORT_PAUSE_SECONDS if pause_seconds is None else pause_seconds

    # ── Single entry ───────────────────────────────────────────────────

    async def add(self, bot_id: str, payload: Mapping[str, Any] | KnowledgeCreate) -> KnowledgeEntry:
        data = KnowledgeCreate.model_validate(payload)
        return await self._store.insert(bot_id, data.category, data.title, data.content, data.metadata)


    async def modify(self, entry_id: str, bot_id: str, payload: Mapping[str, Any] | KnowledgeUpdate) -> KnowledgeEntry:
        """
        Apply a partial update.

        ``metadata`` is forwarded only when the payload set it explicitly,
        so ``{"metadata": None}`` clears it while omitting it keeps it.
        """
        data = KnowledgeUpdate.model_validate(payload)
        changes: dict[str, Any] = {"title": data.title, "content": data.content}
        if "metadata" in data.model_fields_set:
            changes["metadata"] = data.metadata
        return await self._store.update(entry_id, bot_id, **changes)


    async def remove(self, entry_id: str, bot_id: str) -> None:
        await self._store.delete(entry_id, bot_id)


    async def list(self, bot_id: str, category: str | None = None) -> list[KnowledgeEntry]:
        """All of *bot_id*'s entries, optionally narrowed to one category."""
        if category is None:
            return await self._store.list_all(bot_id)
        if not is_knowledge_category(category):
            raise ValueError(f"Invalid category '{category}'. Must be one of: {', '.join(KNOWLEDGE_CATEGORIES)}")
        return await self._store.list_by_category(bot_id, category)

    # ── Bulk import ────────────────────────────────────────────────────

    async def bulk_import(self, bot_id: str, payloads: Sequence[Mapping[str, Any] | KnowledgeCreate]) -> list[KnowledgeEntry]:
        """
        Validate every payload, then insert in concurrent batches.

        Nothing is written if any payload is invalid.  A failure inside a
        batch propagates; batches already committed stay committed.

        Returns
        -------
        list[KnowledgeEntry]
            Inserted entries, in input order.
        """
        items = [KnowledgeCreate.model_validate(p) for p in payloads]
        if not items:
            return []

        t_start = time.perf_counter()
        batch_count = (len(items) + self._batch_size - 1) // self._batch_size
        logger.info("[IMPORT] Importing %d entr(ies) for bot %s in %d batch(es).", len(items), bot_id, batch_count)

        inserted: list[KnowledgeEntry] = []
        for batch_no, start in enumerate(range(0, len(items), self._batch_size), 1):
            batch = items[start:start + self._batch_size]
            entries = await asyncio.gather(*(self._store.insert(bot_id, i.category, i.title, i.content, i.metadata) for i in batch))
            inserted.extend(entries)
            logger.debug("[IMPORT] Batch %d/%d stored (%d entr(ies)).", batch_no, batch_count, len(entries))

            if batch_no < batch_count and self._pause_seconds > 0:
                await asyncio.sleep(self._pause_seconds)

        logger.info("[IMPORT] Import complete — %d entr(ies) in %.2fs.", len(inserted), time.perf_counter() - t_start)
        return inserted
