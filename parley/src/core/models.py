"""
Parley - Domain Models
=======================
Pydantic models for everything the retrieval core stores, returns, or
accepts at its boundary.

Persisted
---------
``KnowledgeEntry``       per-bot knowledge, one of three closed categories.
``UserPreferenceEntry``  per-user learned preference statement.

Transient
---------
``SearchResult``         a scored projection of either of the above.
``RAGContext``           ranked results + formatted text + category counts.
``RetrievalOptions``     ``top_k`` / ``include_categories`` / ``min_similarity``.

Boundary input
--------------
``KnowledgeCreate`` / ``KnowledgeUpdate`` carry the validation rules the
CRUD layer enforces before anything reaches storage or the embedder.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, model_validator

from parley.config.settings import settings

# ── Closed enums ───────────────────────────────────────────────────────
KnowledgeCategory = Literal["product_info", "business_rules", "instructions"]
PreferenceSource = Literal["explicit", "pattern_analysis"]
Partition = Literal["product_info", "business_rules", "instructions", "user_preferences"]

KNOWLEDGE_CATEGORIES: tuple[str, ...] = get_args(KnowledgeCategory)
PREFERENCE_SOURCES: tuple[str, ...] = get_args(PreferenceSource)
ALL_PARTITIONS: tuple[str, ...] = get_args(Partition)

USER_PREFERENCE_PARTITION = "user_preferences"

# Title carried by every preference hit; counts and formatting key on it
# because preference rows reuse ``category`` for their source.
USER_PREFERENCE_TITLE = "User Preference"

# Opaque caller-defined payload, stored and returned verbatim
Metadata = dict[str, Any]


def is_knowledge_category(value: object) -> bool:
    return isinstance(value, str) and value in KNOWLEDGE_CATEGORIES


# ══════════════════════════════════════════════════════════════════════
#  PERSISTED RECORDS
# ══════════════════════════════════════════════════════════════════════


class KnowledgeEntry(BaseModel):
    """A knowledge row as stored for one bot (embedding omitted)."""

    id: str
    bot_id: str
    category: KnowledgeCategory
    title: str
    content: str
    metadata: Metadata | None = None
    created_at: datetime
    updated_at: datetime


class UserPreferenceEntry(BaseModel):
    """A learned preference row as stored for one user (embedding omitted)."""

    id: str
    user_id: str
    preference: str
    source: PreferenceSource
    confidence: float = Field(ge=0.0, le=1.0)
    created_at: datetime


# ══════════════════════════════════════════════════════════════════════
#  TRANSIENT RESULTS
# ══════════════════════════════════════════════════════════════════════


class SearchResult(BaseModel):
    """
    One nearest-neighbour hit.

    For knowledge hits ``category`` is the knowledge category.  For
    preference hits ``category`` holds the preference *source* and
    ``title`` is ``USER_PREFERENCE_TITLE``.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    category: str
    title: str
    content: str
    metadata: Metadata | None = None
    similarity: float

    @property
    def is_user_preference(self) -> bool:
        return self.category in PREFERENCE_SOURCES and self.title == USER_PREFERENCE_TITLE


class CategoryCounts(BaseModel):
    product_info: int = 0
    business_rules: int = 0
    instructions: int = 0
    user_preferences: int = 0


class RAGContext(BaseModel):
    """Output of ``RetrievalEngine.retrieve_context``."""

    results: list[SearchResult] = Field(default_factory=list)
    formatted_context: str
    total_results: int = 0
    categories: CategoryCounts = Field(default_factory=CategoryCounts)


class RetrievalOptions(BaseModel):
    """Per-call retrieval knobs; unset fields fall back to ``settings``."""

    top_k: int = Field(default_factory=lambda: settings.RAG_TOP_K, ge=1)
    include_categories: list[Partition] = Field(default_factory=lambda: list(ALL_PARTITIONS))
    min_similarity: float = Field(default_factory=lambda: settings.RAG_MIN_SIMILARITY, ge=0.0, le=1.0)


# ══════════════════════════════════════════════════════════════════════
#  BOUNDARY INPUT
# ══════════════════════════════════════════════════════════════════════


class KnowledgeCreate(BaseModel):
    """Validated input for adding one knowledge entry."""

    category: KnowledgeCategory
    title: str = Field(min_length=3, max_length=200)
    content: str = Field(min_length=10)
    metadata: Metadata | None = None


class KnowledgeUpdate(BaseModel):
    """Validated partial update; at least one field must be supplied."""

    title: str | None = Field(default=None, min_length=3, max_length=200)
    content: str | None = Field(default=None, min_length=10)
    metadata: Metadata | None = None

    @model_validator(mode="after")
    def _at_least_one_field(self) -> KnowledgeUpdate:
        if self.title is None and self.content is None and self.metadata is None:
            raise ValueError("Must provide at least one field to update (title, content, or metadata)")
        return self


class ConversationMessage(BaseModel):
    """A chat message as seen by pattern analysis."""

    content: str
    sender_id: str
    sender_name: str = ""
    created_at: datetime


class PreferenceStats(BaseModel):
    total: int = 0
    explicit: int = 0
    inferred: int = 0
    average_confidence: float = 0.0


class PreferenceSummary(BaseModel):
    """Preference read view: every row, rows grouped by source, and stats."""

    all: list[UserPreferenceEntry] = Field(default_factory=list)
    by_source: dict[str, list[UserPreferenceEntry]] = Field(default_factory=dict)
    stats: PreferenceStats = Field(default_factory=PreferenceStats)
