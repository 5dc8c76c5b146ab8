"""
Parley - Centralized Configuration
===================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- ``GOOGLE_API_KEY`` is typed as ``SecretStr`` and has **no default value**.
  If the key is missing at startup, Pydantic will raise a ``ValidationError``
  with a clear error message.  The raw value is never exposed in repr,
  logs, or tracebacks.

Scope
-----
These values are *defaults*.  Every service object (embedder, stores,
retrieval engine) receives its collaborators and knobs through its
constructor and only falls back to ``settings`` when the caller passes
nothing, so tests can build fully isolated instances.

Paths
-----
All filesystem paths are ``Path.resolve()``-d at class level so they
work identically on Windows, WSL, and Linux.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).
    Fields *without* a default are **required** — the app will refuse
    to start until they are provided.

    Attributes
    ----------
    GOOGLE_API_KEY : SecretStr
        API key for Google AI Studio (Gemini embeddings).  **Required.**
    ENV : Literal["dev", "prod"]
        Environment mode controlling logging verbosity.
    LANCEDB_PATH : Path
        Directory of the on-disk LanceDB database.
    KNOWLEDGE_TABLE_NAME / PREFERENCE_TABLE_NAME : str
        Table names for bot knowledge and learned user preferences.
    EMBEDDING_MODEL : str
        Model identifier passed to ``GoogleGenerativeAIEmbeddings``.
    EMBEDDING_DIMENSIONS : int
        Stored vector width.  Longer model output is truncated to this prefix.
    EMBEDDING_MAX_WORDS : int
        Word cap applied before text is sent to the embedding model.
    EMBEDDING_TIMEOUT_SECONDS : float
        Upper bound for a single embedding call.
    EMBEDDING_MAX_RETRIES / EMBEDDING_RETRY_BASE_DELAY
        Attempt budget and first backoff delay (doubles per attempt).
    RAG_TOP_K / RAG_MIN_SIMILARITY
        Default retrieval size and similarity floor.
    BULK_IMPORT_BATCH_SIZE / BULK_IMPORT_PAUSE_SECONDS
        Concurrency and pacing for knowledge bulk imports.
    PATTERN_ANALYSIS_INTERVAL / PATTERN_ANALYSIS_WINDOW
        Run pattern analysis every N user messages over the last M messages.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"

    # ── API Keys (REQUIRED, no default) ────────────────────────────────
    GOOGLE_API_KEY: SecretStr

    # ── LanceDB ────────────────────────────────────────────────────────
    KNOWLEDGE_TABLE_NAME: str = "knowledge_base"
    PREFERENCE_TABLE_NAME: str = "user_preferences"

    # ── Embedding Model ────────────────────────────────────────────────
    EMBEDDING_MODEL: str = "gemini-embedding-001"
    EMBEDDING_DIMENSIONS: int = 768
    EMBEDDING_MAX_WORDS: int = 8000
    EMBEDDING_TIMEOUT_SECONDS: float = 30.0
    EMBEDDING_MAX_RETRIES: int = 3
    EMBEDDING_RETRY_BASE_DELAY: float = 1.0

    # ── Retrieval ──────────────────────────────────────────────────────
    RAG_TOP_K: int = 7
    RAG_MIN_SIMILARITY: float = 0.3

    # ── Knowledge Bulk Import ──────────────────────────────────────────
    BULK_IMPORT_BATCH_SIZE: int = 10
    BULK_IMPORT_PAUSE_SECONDS: float = 1.0

    # ── Preference Learning ────────────────────────────────────────────
    PATTERN_ANALYSIS_INTERVAL: int = 10
    PATTERN_ANALYSIS_WINDOW: int = 30

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("EMBEDDING_DIMENSIONS", "EMBEDDING_MAX_WORDS", "RAG_TOP_K", "BULK_IMPORT_BATCH_SIZE", "PATTERN_ANALYSIS_INTERVAL", "PATTERN_ANALYSIS_WINDOW")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be ≥ 1, got {v}")
        return v


    @field_validator("EMBEDDING_MAX_RETRIES")
    @classmethod
    def _retries_range(cls, v: int) -> int:
        if not 1 <= v <= 10:
            raise ValueError(f"EMBEDDING_MAX_RETRIES must be 1–10, got {v}")
        return v


    @field_validator("RAG_MIN_SIMILARITY")
    @classmethod
    def _similarity_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"RAG_MIN_SIMILARITY must be within [0, 1], got {v}")
        return v

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from parley.config.settings import settings
settings = Settings()
