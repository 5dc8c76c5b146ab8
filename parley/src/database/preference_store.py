"""
Parley - Preference Store
==========================
Append-mostly storage for per-user ``UserPreferenceEntry`` rows with
cosine nearest-neighbour search scoped by ``user_id``.

Search hits are projected onto ``SearchResult`` with ``category`` set to
the preference *source* and ``title`` set to ``USER_PREFERENCE_TITLE``,
so knowledge and preference hits can be ranked in one list.

``delete`` is unconditional by id; ownership checks, where needed, belong
to the caller.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone

import lancedb
import pyarrow as pa

from parley.config.settings import settings
from parley.src.core.embedder import GeminiEmbedder
from parley.src.core.models import PREFERENCE_SOURCES, USER_PREFERENCE_TITLE, PreferenceSource, SearchResult, UserPreferenceEntry
from parley.src.database.vector_store import DISTANCE_COLUMN, LanceVectorTable, Row, equals, similarity_from_distance, vector_field
from parley.src.utils.logger import get_logger

logger = get_logger(__name__)


def preference_schema(dimensions: int) -> pa.Schema:
    return pa.schema([
        pa.field("id", pa.utf8(), nullable=False),
        pa.field("user_id", pa.utf8(), nullable=False),
        pa.field("preference", pa.utf8(), nullable=False),
        pa.field("source", pa.utf8(), nullable=False),
        pa.field("confidence", pa.float64(), nullable=False),
        vector_field(dimensions),
        pa.field("created_at", pa.timestamp("us", tz="UTC"), nullable=False),
    ])


def _to_entry(row: Row) -> UserPreferenceEntry:
    return UserPreferenceEntry(id=row["id"], user_id=row["user_id"], preference=row["preference"], source=row["source"], confidence=row["confidence"], created_at=row["created_at"])


class PreferenceStore(LanceVectorTable):
    """
    Per-user preference table.

    Parameters
    ----------
    db
        Open LanceDB connection.
    embedder
        ``GeminiEmbedder`` (or compatible) used for preference embeddings.
    table_name
        Defaults to ``settings.PREFERENCE_TABLE_NAME``.
    """

    __slots__ = ("embedder",)

    def __init__(self, db: lancedb.DBConnection, embedder: GeminiEmbedder, table_name: str | None = None) -> None:
        self.embedder = embedder
        super().__init__(db, table_name or settings.PREFERENCE_TABLE_NAME, preference_schema(embedder.dimensions))


    async def insert(self, user_id: str, preference: str, source: PreferenceSource, confidence: float = 1.0) -> UserPreferenceEntry:
        """Embed *preference* and persist it with its vector in one write."""
        if source not in PREFERENCE_SOURCES:
            raise ValueError(f"Invalid preference source '{source}'. Must be one of: {', '.join(PREFERENCE_SOURCES)}")
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {confidence}")

        vector = await self.embedder.embed_with_retry(preference)
        record: Row = {"id": uuid.uuid4().hex, "user_id": user_id, "preference": preference, "source": source, "confidence": float(confidence), "vector": vector, "created_at": datetime.now(timezone.utc)}
        await asyncio.to_thread(self._append, record)

        logger.info("[PREFS] Saved for user %s: %.50s (%s, %.2f)", user_id, preference, source, confidence)
        return _to_entry(record)


    async def search(self, user_id: str, query_embedding: list[float], top_k: int = 3) -> list[SearchResult]:
        """Up to *top_k* of *user_id*'s preferences nearest to *query_embedding*."""
        rows = await asyncio.to_thread(self._nearest, query_embedding, equals("user_id", user_id), top_k)
        results = [SearchResult(id=r["id"], category=r["source"], title=USER_PREFERENCE_TITLE, content=r["preference"], metadata={"confidence": r["confidence"]}, similarity=similarity_from_distance(r[DISTANCE_COLUMN])) for r in rows]

        logger.debug("[PREFS] Search user=%s → %d hit(s).", user_id, len(results))
        return results


    async def list_all(self, user_id: str) -> list[UserPreferenceEntry]:
        """All preferences for *user_id*, highest confidence first."""
        rows = await asyncio.to_thread(self._select_rows, equals("user_id", user_id))
        entries = [_to_entry(r) for r in rows]
        entries.sort(key=lambda e: (-e.confidence, e.id))
        return entries


    async def delete(self, preference_id: str) -> None:
        """Remove a preference by id, regardless of owner."""
        await asyncio.to_thread(self._delete_where, equals("id", preference_id))
        logger.info("[PREFS] Deleted %s.", preference_id)
