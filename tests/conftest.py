"""Pytest fixtures for Parley tests."""

import os
import re

# Settings require an API key at import time; tests never reach the network.
os.environ.setdefault("GOOGLE_API_KEY", "test-key")

import pytest
from langchain_core.embeddings import Embeddings

from parley.src.core.embedder import GeminiEmbedder
from parley.src.core.rag_engine import RetrievalEngine
from parley.src.database.knowledge_store import KnowledgeStore
from parley.src.database.preference_store import PreferenceStore
from parley.src.database.vector_store import connect_database

STORE_DIMENSIONS = 8


class KeywordEmbeddings(Embeddings):
    """
    Deterministic embedding double.

    Every known keyword adds 1.0 on its axis; text with no known keyword
    lands on ``FALLBACK_AXIS``.  Vectors are wider than the store so the
    prefix truncation path is always exercised.
    """

    NATIVE_DIMENSIONS = 16
    FALLBACK_AXIS = 7
    AXES = {
        "premium": 0,
        "refund": 1,
        "refunds": 1,
        "plan": 2,
        "basic": 2,
        "chats": 3,
        "support": 4,
        "shipping": 5,
        "delivery": 5,
        "overflow": 12,
    }

    def __init__(self):
        self.calls = []

    def _vector(self, text):
        vector = [0.0] * self.NATIVE_DIMENSIONS
        for word in re.findall(r"[a-z]+", text.lower()):
            axis = self.AXES.get(word)
            if axis is not None:
                vector[axis] += 1.0
        if not any(vector[:STORE_DIMENSIONS]):
            vector[self.FALLBACK_AXIS] = 1.0
        return vector

    def embed_documents(self, texts):
        return [self._vector(t) for t in texts]

    def embed_query(self, text):
        self.calls.append(text)
        return self._vector(text)


@pytest.fixture
def keyword_model():
    return KeywordEmbeddings()


@pytest.fixture
def embedder(keyword_model):
    return GeminiEmbedder(model=keyword_model, dimensions=STORE_DIMENSIONS, retry_base_delay=0)


@pytest.fixture
def db(tmp_path):
    return connect_database(tmp_path / "lancedb")


@pytest.fixture
def knowledge_store(db, embedder):
    return KnowledgeStore(db, embedder)


@pytest.fixture
def preference_store(db, embedder):
    return PreferenceStore(db, embedder)


@pytest.fixture
def engine(knowledge_store, preference_store):
    return RetrievalEngine(knowledge_store, preference_store)
