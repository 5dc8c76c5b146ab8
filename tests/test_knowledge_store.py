"""Tests for KnowledgeStore."""

import asyncio
import warnings

import pytest

from parley.src.core.embedder import GeminiEmbedder
from parley.src.database.knowledge_store import KnowledgeForbiddenError, KnowledgeNotFoundError, KnowledgeStore

BOT = "bot_a"
OTHER_BOT = "bot_b"


def _insert(store, bot_id=BOT, category="product_info", title="Premium Plan", content="Premium plan with priority support", metadata=None):
    return asyncio.run(store.insert(bot_id, category, title, content, metadata))


def _query(embedder, text):
    return asyncio.run(embedder.embed(text))


class TestInsert:
    """Tests for insert and listing."""

    def test_insert_returns_entry(self, knowledge_store):
        entry = _insert(knowledge_store, metadata={"sku": "P1", "tags": ["paid"]})

        assert entry.id
        assert entry.bot_id == BOT
        assert entry.created_at == entry.updated_at
        assert entry.metadata == {"sku": "P1", "tags": ["paid"]}
        assert knowledge_store.count() == 1

    def test_invalid_category_rejected(self, knowledge_store, keyword_model):
        with pytest.raises(ValueError):
            _insert(knowledge_store, category="faq")
        assert keyword_model.calls == []
        assert knowledge_store.count() == 0

    def test_list_all_newest_first_and_scoped(self, knowledge_store):
        first = _insert(knowledge_store, title="First")
        second = _insert(knowledge_store, category="instructions", title="Second")
        _insert(knowledge_store, bot_id=OTHER_BOT, title="Foreign")

        entries = asyncio.run(knowledge_store.list_all(BOT))

        assert [e.id for e in entries] == [second.id, first.id]

    def test_list_by_category(self, knowledge_store):
        _insert(knowledge_store, category="product_info", title="Product")
        rule = _insert(knowledge_store, category="business_rules", title="Rule")

        entries = asyncio.run(knowledge_store.list_by_category(BOT, "business_rules"))

        assert [e.id for e in entries] == [rule.id]

    def test_metadata_round_trips(self, knowledge_store):
        metadata = {"nested": {"level": 2, "ok": True}, "quote": "it's"}
        _insert(knowledge_store, metadata=metadata)

        [entry] = asyncio.run(knowledge_store.list_all(BOT))

        assert entry.metadata == metadata


class TestUpdate:
    """Tests for ownership-checked updates."""

    def test_title_only_keeps_embedding(self, knowledge_store, keyword_model):
        entry = _insert(knowledge_store)
        calls_before = len(keyword_model.calls)

        updated = asyncio.run(knowledge_store.update(entry.id, BOT, title="Premium Tier"))

        assert updated.title == "Premium Tier"
        assert updated.content == entry.content
        assert updated.updated_at > entry.updated_at
        assert updated.created_at == entry.created_at
        assert len(keyword_model.calls) == calls_before

    def test_content_update_reembeds(self, knowledge_store, embedder, keyword_model):
        entry = _insert(knowledge_store)
        calls_before = len(keyword_model.calls)

        asyncio.run(knowledge_store.update(entry.id, BOT, content="Refunds within thirty days"))

        assert len(keyword_model.calls) == calls_before + 1
        [hit] = asyncio.run(knowledge_store.search(BOT, _query(embedder, "refund"), top_k=1))
        assert hit.id == entry.id
        assert hit.similarity == pytest.approx(1.0, abs=1e-5)

        [stale] = asyncio.run(knowledge_store.search(BOT, _query(embedder, "premium"), top_k=1))
        assert stale.similarity == pytest.approx(0.0, abs=1e-5)

    def test_metadata_cleared_with_none(self, knowledge_store):
        entry = _insert(knowledge_store, metadata={"sku": "P1"})

        updated = asyncio.run(knowledge_store.update(entry.id, BOT, metadata=None))

        assert updated.metadata is None

    def test_unknown_id(self, knowledge_store):
        with pytest.raises(KnowledgeNotFoundError):
            asyncio.run(knowledge_store.update("missing", BOT, title="Nope"))

    def test_other_bot_forbidden(self, knowledge_store):
        entry = _insert(knowledge_store)

        with pytest.raises(KnowledgeForbiddenError):
            asyncio.run(knowledge_store.update(entry.id, OTHER_BOT, title="Hijacked"))

        [unchanged] = asyncio.run(knowledge_store.list_all(BOT))
        assert unchanged.title == entry.title


class TestDelete:
    """Tests for ownership-checked deletes."""

    def test_delete(self, knowledge_store):
        entry = _insert(knowledge_store)

        asyncio.run(knowledge_store.delete(entry.id, BOT))

        assert asyncio.run(knowledge_store.list_all(BOT)) == []

    def test_other_bot_forbidden(self, knowledge_store):
        entry = _insert(knowledge_store)

        with pytest.raises(KnowledgeForbiddenError):
            asyncio.run(knowledge_store.delete(entry.id, OTHER_BOT))
        assert knowledge_store.count() == 1

    def test_unknown_id(self, knowledge_store):
        with pytest.raises(KnowledgeNotFoundError):
            asyncio.run(knowledge_store.delete("missing", BOT))


class TestSearch:
    """Tests for scoped nearest-neighbour search."""

    def test_ranked_by_similarity(self, knowledge_store, embedder):
        refund = _insert(knowledge_store, category="business_rules", title="Refunds", content="Refund requests within thirty days")
        premium = _insert(knowledge_store, title="Premium", content="Premium plan details")

        hits = asyncio.run(knowledge_store.search(BOT, _query(embedder, "refund policy")))

        assert [h.id for h in hits] == [refund.id, premium.id]
        assert hits[0].similarity > hits[1].similarity

    def test_scoped_to_bot(self, knowledge_store, embedder):
        _insert(knowledge_store, bot_id=OTHER_BOT)

        assert asyncio.run(knowledge_store.search(BOT, _query(embedder, "premium"))) == []

    def test_category_filter(self, knowledge_store, embedder):
        _insert(knowledge_store, category="product_info")
        rule = _insert(knowledge_store, category="business_rules", title="Rule", content="Premium refunds are prorated")

        hits = asyncio.run(knowledge_store.search(BOT, _query(embedder, "premium"), category="business_rules"))

        assert [h.id for h in hits] == [rule.id]
        assert hits[0].category == "business_rules"

    def test_top_k_limits(self, knowledge_store, embedder):
        for i in range(4):
            _insert(knowledge_store, title=f"Premium {i}")

        hits = asyncio.run(knowledge_store.search(BOT, _query(embedder, "premium"), top_k=2))

        assert len(hits) == 2

    def test_quoted_bot_id_matches_nothing(self, knowledge_store, embedder):
        _insert(knowledge_store)

        hits = asyncio.run(knowledge_store.search("x' OR '1'='1", _query(embedder, "premium")))

        assert hits == []

    def test_distance_column_selected_explicitly(self, knowledge_store, embedder):
        _insert(knowledge_store)
        query = _query(embedder, "premium")

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            [hit] = asyncio.run(knowledge_store.search(BOT, query))

        assert hit.similarity == pytest.approx(0.5774, abs=1e-3)
        assert not [w for w in caught if "_distance" in str(w.message)]

    def test_wrong_query_width(self, knowledge_store):
        _insert(knowledge_store)

        with pytest.raises(ValueError):
            asyncio.run(knowledge_store.search(BOT, [1.0, 0.0]))


class TestTable:
    """Tests for table lifecycle."""

    def test_reopen_keeps_rows(self, db, embedder, knowledge_store):
        _insert(knowledge_store)

        assert KnowledgeStore(db, embedder).count() == 1

    def test_open_and_create_without_deprecated_listing(self, db, embedder):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            KnowledgeStore(db, embedder)
            KnowledgeStore(db, embedder)

        assert not [w for w in caught if "table_names" in str(w.message)]

    def test_dimension_mismatch_on_reopen(self, db, keyword_model, knowledge_store):
        wider = GeminiEmbedder(model=keyword_model, dimensions=12)
        with pytest.raises(ValueError):
            KnowledgeStore(db, wider)

    def test_drop_table(self, knowledge_store):
        _insert(knowledge_store)
        knowledge_store.drop_table()

        assert knowledge_store.count() == 0
