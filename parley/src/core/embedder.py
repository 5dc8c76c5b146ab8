"""
Parley - Embedder
==================
Turns text into fixed-width dense vectors with an external embedding
model (Gemini through ``langchain-google-genai`` by default).

Policies
--------
• **Sanitation** — whitespace is collapsed and trimmed; empty input is
  rejected with ``EmptyInputError`` and never mapped to a zero vector.
• **Word cap** — text longer than ``max_words`` words is cut to the cap
  and suffixed with ``...`` before it is sent to the model.
• **Prefix truncation** — the model may return more components than the
  store holds; only the first ``dimensions`` are kept.  This assumes the
  model front-loads significance in its output order.  That holds for
  Matryoshka-style models but is an approximation, not a guarantee.
• **Timeout** — every model call is bounded by ``timeout`` seconds.
• **Retry** — ``embed_with_retry`` retries transient failures (including
  timeouts) with tenacity's exponential backoff.  Quota and credential
  failures are fatal and propagate at once without consuming the budget.

Usage:
    from parley.src.core.embedder import GeminiEmbedder
    embedder = GeminiEmbedder()                       # model from settings
    vector   = await embedder.embed_with_retry("hello")
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from parley.config.settings import settings
from parley.src.utils.logger import get_logger
from parley.src.utils.text_utils import clean_text

logger = get_logger(__name__)

Vector = list[float]

# Substrings that mark a provider error as non-retryable
_QUOTA_MARKERS = ("quota", "resource_exhausted", "resource exhausted")
_CREDENTIAL_MARKERS = ("api key", "api_key", "permission_denied", "unauthenticated", "invalid credentials")
_QUOTA_STATUS_CODES = {429}
_CREDENTIAL_STATUS_CODES = {401, 403}


# ══════════════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════════════


class EmbeddingError(Exception):
    """Base class for every embedding failure."""


class EmptyInputError(EmbeddingError, ValueError):
    """Text was empty or whitespace-only."""


class EmptyEmbeddingError(EmbeddingError):
    """The model answered with a zero-length vector."""


class EmbeddingFatalError(EmbeddingError):
    """Provider failure that retrying cannot fix."""


class EmbeddingQuotaError(EmbeddingFatalError):
    """Provider quota is exhausted."""


class EmbeddingCredentialsError(EmbeddingFatalError):
    """API key is missing, invalid, or lacks permission."""


class EmbeddingUnavailableError(EmbeddingError):
    """Every retry attempt failed with a transient error."""


# ══════════════════════════════════════════════════════════════════════
#  MODEL PROTOCOL
# ══════════════════════════════════════════════════════════════════════


@runtime_checkable
class EmbeddingModel(Protocol):
    """Structural type for any LangChain-compatible embedding model."""

    async def aembed_query(self, text: str) -> list[float]: ...


def _default_model() -> EmbeddingModel:
    """Build the Gemini embedding client from ``settings``."""
    from langchain_google_genai import GoogleGenerativeAIEmbeddings

    return GoogleGenerativeAIEmbeddings(model=settings.EMBEDDING_MODEL, google_api_key=settings.GOOGLE_API_KEY.get_secret_value())


def classify_provider_error(exc: BaseException) -> EmbeddingFatalError | None:
    """
    Map a provider exception to a fatal error, or *None* if it is transient.

    Checks an HTTP-style status code attribute first (``code`` or
    ``status_code``) and falls back to well-known message fragments, since
    the Google client libraries wrap the same failures differently across
    versions.
    """
    status = getattr(exc, "code", None) or getattr(exc, "status_code", None)
    message = str(exc).lower()

    if status in _QUOTA_STATUS_CODES or any(m in message for m in _QUOTA_MARKERS):
        return EmbeddingQuotaError(f"Embedding quota exceeded: {exc}")
    if status in _CREDENTIAL_STATUS_CODES or any(m in message for m in _CREDENTIAL_MARKERS):
        return EmbeddingCredentialsError(f"Embedding credentials rejected: {exc}")
    return None


# Raised for the caller's input or a fatal provider answer; never retried
_NOT_RETRYABLE = (EmptyInputError, EmptyEmbeddingError, EmbeddingFatalError)


def _attempt_budget(max_retries: int) -> int:
    if max_retries < 1:
        raise ValueError(f"max_retries must be at least 1, got {max_retries}")
    return max_retries


async def _backoff_sleep(seconds: float) -> None:
    await asyncio.sleep(seconds)


# ══════════════════════════════════════════════════════════════════════
#  EMBEDDER
# ══════════════════════════════════════════════════════════════════════


class GeminiEmbedder:
    """
    Sanitising, truncating, retrying wrapper around an embedding model.

    Parameters
    ----------
    model
        Any object with ``aembed_query`` (LangChain ``Embeddings``).
        Defaults to ``GoogleGenerativeAIEmbeddings`` configured from settings.
    dimensions
        Width of the returned vectors (``D``).
    max_words
        Word cap applied before the model call.
    timeout
        Seconds allowed for one model call.
    max_retries
        Default attempt budget for ``embed_with_retry``.
    retry_base_delay
        First backoff delay in seconds; doubles per attempt.
    """

    __slots__ = ("_model", "dimensions", "max_words", "timeout", "max_retries", "retry_base_delay")

    def __init__(self, model: EmbeddingModel | None = None, dimensions: int | None = None, max_words: int | None = None, timeout: float | None = None, max_retries: int | None = None, retry_base_delay: float | None = None) -> None:
        self._model: EmbeddingModel = model if model is not None else _default_model()
        self.dimensions: int = settings.EMBEDDING_DIMENSIONS if dimensions is None else dimensions
        self.max_words: int = settings.EMBEDDING_MAX_WORDS if max_words is None else max_words
        self.timeout: float = settings.EMBEDDING_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_retries: int = settings.EMBEDDING_MAX_RETRIES if max_retries is None else _attempt_budget(max_retries)
        self.retry_base_delay: float = settings.EMBEDDING_RETRY_BASE_DELAY if retry_base_delay is None else retry_base_delay

        if self.dimensions < 1 or self.max_words < 1 or self.timeout <= 0:
            raise ValueError("dimensions, max_words and timeout must be positive")


    async def embed(self, text: str) -> Vector:
        """
        Embed one text.

        Raises
        ------
        EmptyInputError
            *text* is empty or whitespace-only.
        EmptyEmbeddingError
            The model returned no components.
        EmbeddingFatalError
            Quota or credential failure.
        asyncio.TimeoutError
            The model call exceeded ``timeout``.
        """
        if not text or not text.strip():
            raise EmptyInputError("Text cannot be empty")

        cleaned, truncated = clean_text(text, self.max_words)
        if truncated:
            logger.warning("[EMBED] Text truncated to %d words.", self.max_words)

        try:
            raw = await asyncio.wait_for(self._model.aembed_query(cleaned), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise
        except Exception as exc:
            fatal = classify_provider_error(exc)
            if fatal is not None:
                raise fatal from exc
            raise

        if not raw:
            raise EmptyEmbeddingError("Embedding model returned an empty vector")

        vector = [float(v) for v in raw[: self.dimensions]]
        logger.debug("[EMBED] Generated embedding with %d dimensions, kept %d.", len(raw), len(vector))
        return vector


    async def embed_batch(self, texts: list[str]) -> list[Vector]:
        """
        Embed every text concurrently, preserving input order.

        Any single failure fails the whole batch.
        """
        if not texts:
            raise EmptyInputError("Texts list cannot be empty")
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))


    async def embed_with_retry(self, text: str, max_retries: int | None = None) -> Vector:
        """
        Embed with up to *max_retries* attempts and exponential backoff.

        Waits ``retry_base_delay * 2**(attempt - 1)`` seconds between
        attempts.  ``EmptyInputError``, ``EmptyEmbeddingError`` and
        ``EmbeddingFatalError`` propagate immediately.

        Raises
        ------
        EmbeddingUnavailableError
            All attempts failed with transient errors or timeouts.
        """
        attempts = self.max_retries if max_retries is None else _attempt_budget(max_retries)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self.retry_base_delay),
            retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(_NOT_RETRYABLE),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=_backoff_sleep,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self.embed(text)
        except RetryError as exc:
            logger.error("[EMBED] All %d attempts exhausted.", attempts)
            raise EmbeddingUnavailableError(f"Failed to generate embedding after {attempts} attempts") from exc.last_attempt.exception()
