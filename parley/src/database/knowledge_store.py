"""
Parley - Knowledge Store
=========================
Durable CRUD for per-bot ``KnowledgeEntry`` rows plus cosine
nearest-neighbour search, every operation scoped by ``bot_id``.

Invariants
----------
• The embedding is computed from ``content`` *before* the write and is
  committed in the same row write, so a reader never sees content newer
  than its vector.
• ``update`` regenerates the embedding only when ``content`` changes;
  title/metadata-only updates keep the stored vector.
• ``update`` / ``delete`` fail with ``KnowledgeNotFoundError`` for an
  unknown id and ``KnowledgeForbiddenError`` when the row belongs to a
  different bot — never silently touching another tenant's data.
• ``category`` is checked against the closed enum before any predicate
  is built from it.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone

import lancedb
import pyarrow as pa

from parley.config.settings import settings
from parley.src.core.embedder import GeminiEmbedder
from parley.src.core.models import KNOWLEDGE_CATEGORIES, KnowledgeCategory, KnowledgeEntry, Metadata, SearchResult, is_knowledge_category
from parley.src.database.vector_store import DISTANCE_COLUMN, LanceVectorTable, Row, all_of, equals, similarity_from_distance, vector_field
from parley.src.utils.logger import get_logger

logger = get_logger(__name__)

# Sentinel distinguishing "metadata not supplied" from "metadata cleared"
_UNSET = object()


class KnowledgeNotFoundError(LookupError):
    """No knowledge entry exists with the given id."""


class KnowledgeForbiddenError(PermissionError):
    """The knowledge entry belongs to a different bot."""


def knowledge_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.utf8(), nullable=False),
        pa.field("bot_id", pa.utf8(), nullable=False),
        pa.field("category", pa.utf8(), nullable=False),
        pa.field("title", pa.utf8(), nullable=False),
        pa.field("content", pa.utf8(), nullable=False),
        pa.field("metadata", pa.utf8(), nullable=True),
        vector_field(dimensions),
        pa.field("created_at", pa.timestamp("us", tz="UTC"), nullable=False),
        pa.field("updated_at", pa.timestamp("us", tz="UTC"), nullable=False),
    ])


def _require_category(category: str) -> None:
    if not is_knowledge_category(category):
        raise ValueError(f"Invalid category '{category}'. Must be one of: {', '.join(KNOWLEDGE_CATEGORIES)}")


def _encode_metadata(metadata: Metadata | None) -> str | None:
    return None if metadata is None else json.dumps(metadata, ensure_ascii=False)


def _decode_metadata(raw: str | None) -> Metadata | None:
    return None if raw is None else json.loads(raw)


def _to_entry(row: Row) -> KnowledgeEntry:
    return KnowledgeEntry(id=row["id"], bot_id=row["bot_id"], category=row["category"], title=row["title"], content=row["content"], metadata=_decode_metadata(row.get("metadata")), created_at=row["created_at"], updated_at=row["updated_at"])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeStore(LanceVectorTable):
    """
    Per-bot knowledge table.

    Parameters
    ----------
    db
        Open LanceDB connection.
    embedder
        ``GeminiEmbedder`` (or compatible) used for content embeddings.
    table_name
        Defaults to ``settings.KNOWLEDGE_TABLE_NAME``.
    """

    __slots__ = ("embedder",)

    def __init__(self, db: lancedb.DBConnection, embedder: GeminiEmbedder, table_name: str | None = None) -> None:
        self.embedder = embedder
        super().__init__(db, table_name or settings.KNOWLEDGE_TABLE_NAME, knowledge_schema(embedder.dimensions))

    # ── Create ─────────────────────────────────────────────────────────

    async def insert(self, bot_id: str, category: KnowledgeCategory, title: str, content: str, metadata: Metadata | None = None) -> KnowledgeEntry:
        """Embed *content* and persist the entry with its vector in one write."""
        _require_category(category)
        vector = await self.embedder.embed_with_retry(content)

        now = _utcnow()
        record: Row = {"id": uuid.uuid4().hex, "bot_id": bot_id, "category": category, "title": title, "content": content, "metadata": _encode_metadata(metadata), "vector": vector, "created_at": now, "updated_at": now}
        await asyncio.to_thread(self._append, record)

        logger.info("[KNOWLEDGE] Inserted '%s' (%s) for bot %s.", title, category, bot_id)
        return _to_entry(record)

    # ── Update ─────────────────────────────────────────────────────────

    async def update(self, entry_id: str, bot_id: str, title: str | None = None, content: str | None = None, metadata: Metadata | None | object = _UNSET) -> KnowledgeEntry:
        """
        Update title, content and/or metadata of an entry owned by *bot_id*.

        Pass ``metadata=None`` to clear metadata; omit it to keep it.

        Raises
        ------
        KnowledgeNotFoundError
            No entry with *entry_id*.
        KnowledgeForbiddenError
            The entry belongs to another bot.
        """
        await asyncio.to_thread(self._owned_row, entry_id, bot_id)

        vector = await self.embedder.embed_with_retry(content) if content is not None else None
        entry = await asyncio.to_thread(self._apply_update, entry_id, bot_id, title, content, metadata, vector)

        logger.info("[KNOWLEDGE] Updated %s for bot %s (re-embedded=%s).", entry_id, bot_id, vector is not None)
        return entry


    def _apply_update(self, entry_id: str, bot_id: str, title: str | None, content: str | None, metadata: Metadata | None | object, vector: list[float] | None) -> KnowledgeEntry:
        # Re-read under the write lock so concurrent writers cannot interleave.
        with self._write_lock:
            row = self._owned_row(entry_id, bot_id, include_vector=True)

            if title is not None:
                row["title"] = title
            if content is not None:
                row["content"] = content
                row["vector"] = vector
            if metadata is not _UNSET:
                row["metadata"] = _encode_metadata(metadata)  # type: ignore[arg-type]
            row["updated_at"] = max(_utcnow(), row["updated_at"] + timedelta(microseconds=1))

            self._replace_locked(row)
        return _to_entry(row)

    # ── Delete ─────────────────────────────────────────────────────────

    async def delete(self, entry_id: str, bot_id: str) -> None:
        """Permanently remove an entry owned by *bot_id* (same checks as ``update``)."""
        await asyncio.to_thread(self._delete_owned, entry_id, bot_id)
        logger.info("[KNOWLEDGE] Deleted %s for bot %s.", entry_id, bot_id)


    def _delete_owned(self, entry_id: str, bot_id: str) -> None:
        with self._write_lock:
            self._owned_row(entry_id, bot_id)
            self._require_table().delete(equals("id", entry_id))


    def _owned_row(self, entry_id: str, bot_id: str, include_vector: bool = False) -> Row:
        row = self._get_row(equals("id", entry_id), include_vector=include_vector)
        if row is None:
            raise KnowledgeNotFoundError(f"Knowledge entry not found: {entry_id}")
        if row["bot_id"] != bot_id:
            raise KnowledgeForbiddenError(f"Knowledge entry {entry_id} belongs to a different bot")
        return row

    # ── Read ───────────────────────────────────────────────────────────

    async def list_by_category(self, bot_id: str, category: KnowledgeCategory) -> list[KnowledgeEntry]:
        """All entries of one category for *bot_id*, newest first."""
        _require_category(category)
        return await asyncio.to_thread(self._list, all_of(equals("bot_id", bot_id), equals("category", category)))


    async def list_all(self, bot_id: str) -> list[KnowledgeEntry]:
        """All entries for *bot_id*, newest first."""
        return await asyncio.to_thread(self._list, equals("bot_id", bot_id))


    def _list(self, where: str) -> list[KnowledgeEntry]:
        entries = [_to_entry(r) for r in self._select_rows(where)]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries

    # ── Search ─────────────────────────────────────────────────────────

    async def search(self, bot_id: str, query_embedding: list[float], category: KnowledgeCategory | None = None, top_k: int = 5) -> list[SearchResult]:
        """
        Up to *top_k* of *bot_id*'s entries nearest to *query_embedding*.

        Ordered by descending similarity (``1 - cosine_distance``); entries
        without an embedding are never returned.
        """
        where = equals("bot_id", bot_id)
        if category is not None:
            _require_category(category)
            where = all_of(where, equals("category", category))

        rows = await asyncio.to_thread(self._nearest, query_embedding, where, top_k)
        results = [SearchResult(id=r["id"], category=r["category"], title=r["title"], content=r["content"], metadata=_decode_metadata(r.get("metadata")), similarity=similarity_from_distance(r[DISTANCE_COLUMN])) for r in rows]

        logger.debug("[KNOWLEDGE] Search bot=%s category=%s → %d hit(s).", bot_id, category or "*", len(results))
        return results
