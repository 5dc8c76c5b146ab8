"""Tests for GeminiEmbedder."""

import asyncio

import pytest

from parley.src.core.embedder import (
    EmbeddingCredentialsError,
    EmbeddingQuotaError,
    EmbeddingUnavailableError,
    EmptyEmbeddingError,
    EmptyInputError,
    GeminiEmbedder,
    classify_provider_error,
)


class ScriptedModel:
    """Embedding model that replays a list of outcomes (exceptions or vectors)."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.texts = []

    async def aembed_query(self, text):
        self.texts.append(text)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SlowModel:
    def __init__(self):
        self.calls = 0

    async def aembed_query(self, text):
        self.calls += 1
        await asyncio.sleep(5)
        return [1.0, 0.0]


class OverlapModel:
    """Embedding model that records how many calls are in flight at once."""

    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def aembed_query(self, text):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        await asyncio.sleep(0.01)
        self.in_flight -= 1
        return [1.0, 0.0]


class StatusError(Exception):
    def __init__(self, message, code):
        super().__init__(message)
        self.code = code


def _embedder(model, **kwargs):
    kwargs.setdefault("dimensions", 4)
    kwargs.setdefault("retry_base_delay", 0)
    return GeminiEmbedder(model=model, **kwargs)


class TestEmbed:
    """Tests for single-text embedding."""

    def test_truncates_to_leading_components(self):
        model = ScriptedModel([float(i) for i in range(10)])
        vector = asyncio.run(_embedder(model).embed("hello world"))

        assert vector == [0.0, 1.0, 2.0, 3.0]

    def test_keyword_model_vector_has_store_width(self, embedder):
        vector = asyncio.run(embedder.embed("premium overflow"))

        assert len(vector) == embedder.dimensions
        assert vector[0] == 1.0

    def test_collapses_whitespace_before_model_call(self):
        model = ScriptedModel([1.0])
        asyncio.run(_embedder(model).embed("  hello \n\n  world\t "))

        assert model.texts == ["hello world"]

    def test_word_cap_appends_marker(self):
        model = ScriptedModel([1.0])
        asyncio.run(_embedder(model, max_words=3).embed("one two three four five"))

        assert model.texts == ["one two three..."]

    @pytest.mark.parametrize("text", ["", "   ", "\n\t"])
    def test_empty_input_rejected_without_model_call(self, text):
        model = ScriptedModel([1.0])

        with pytest.raises(EmptyInputError):
            asyncio.run(_embedder(model).embed(text))
        assert model.texts == []

    def test_empty_vector_rejected(self):
        with pytest.raises(EmptyEmbeddingError):
            asyncio.run(_embedder(ScriptedModel([])).embed("hello"))

    def test_timeout(self):
        with pytest.raises(asyncio.TimeoutError):
            asyncio.run(_embedder(SlowModel(), timeout=0.01).embed("hello"))

    def test_explicit_zero_dimensions_rejected(self):
        with pytest.raises(ValueError):
            _embedder(ScriptedModel([1.0]), dimensions=0)

    def test_quota_error_is_fatal(self):
        model = ScriptedModel(RuntimeError("429 Resource has been exhausted (e.g. check quota)."))

        with pytest.raises(EmbeddingQuotaError):
            asyncio.run(_embedder(model).embed("hello"))


class TestEmbedBatch:
    """Tests for batch embedding."""

    def test_preserves_order(self, embedder):
        vectors = asyncio.run(embedder.embed_batch(["premium", "refund", "shipping"]))

        assert [v.index(1.0) for v in vectors] == [0, 1, 5]

    def test_texts_embedded_concurrently(self):
        model = OverlapModel()

        vectors = asyncio.run(_embedder(model).embed_batch(["one", "two", "three"]))

        assert len(vectors) == 3
        assert model.peak == 3

    def test_empty_list_rejected(self, embedder):
        with pytest.raises(EmptyInputError):
            asyncio.run(embedder.embed_batch([]))

    def test_single_failure_fails_batch(self, embedder):
        with pytest.raises(EmptyInputError):
            asyncio.run(embedder.embed_batch(["premium", "  "]))


class TestEmbedWithRetry:
    """Tests for the retry policy."""

    def test_recovers_after_transient_failures(self):
        model = ScriptedModel(RuntimeError("boom"), RuntimeError("boom"), [0.5, 0.5])
        vector = asyncio.run(_embedder(model).embed_with_retry("hello"))

        assert vector == [0.5, 0.5]
        assert len(model.texts) == 3

    def test_exhaustion_raises_unavailable(self):
        model = ScriptedModel(ConnectionError("reset by peer"))

        with pytest.raises(EmbeddingUnavailableError) as excinfo:
            asyncio.run(_embedder(model).embed_with_retry("hello"))
        assert len(model.texts) == 3
        assert isinstance(excinfo.value.__cause__, ConnectionError)

    def test_explicit_attempt_budget(self):
        model = ScriptedModel(RuntimeError("boom"))

        with pytest.raises(EmbeddingUnavailableError):
            asyncio.run(_embedder(model).embed_with_retry("hello", max_retries=5))
        assert len(model.texts) == 5

    def test_timeouts_are_retried(self):
        model = SlowModel()

        with pytest.raises(EmbeddingUnavailableError):
            asyncio.run(_embedder(model, timeout=0.01, max_retries=2).embed_with_retry("hello"))
        assert model.calls == 2

    def test_backoff_doubles(self, monkeypatch):
        delays = []

        async def fake_sleep(seconds):
            delays.append(seconds)

        monkeypatch.setattr(asyncio, "sleep", fake_sleep)
        model = ScriptedModel(RuntimeError("boom"))

        with pytest.raises(EmbeddingUnavailableError):
            asyncio.run(_embedder(model, retry_base_delay=1.0).embed_with_retry("hello"))
        assert delays == [1.0, 2.0]

    def test_fatal_error_after_transient_stops_retrying(self):
        model = ScriptedModel(RuntimeError("boom"), RuntimeError("429 quota exceeded"), [0.5])

        with pytest.raises(EmbeddingQuotaError):
            asyncio.run(_embedder(model).embed_with_retry("hello"))
        assert len(model.texts) == 2

    def test_single_attempt_budget_respected(self):
        model = ScriptedModel(RuntimeError("boom"), [0.5])

        with pytest.raises(EmbeddingUnavailableError):
            asyncio.run(_embedder(model, max_retries=1).embed_with_retry("hello"))
        assert len(model.texts) == 1

    def test_zero_attempt_budget_rejected(self):
        model = ScriptedModel([0.5])

        with pytest.raises(ValueError):
            asyncio.run(_embedder(model).embed_with_retry("hello", max_retries=0))
        with pytest.raises(ValueError):
            _embedder(model, max_retries=0)
        assert model.texts == []

    def test_credentials_error_not_retried(self):
        model = ScriptedModel(StatusError("API key not valid. Please pass a valid API key.", 400))

        with pytest.raises(EmbeddingCredentialsError):
            asyncio.run(_embedder(model).embed_with_retry("hello"))
        assert len(model.texts) == 1

    def test_empty_input_not_retried(self):
        model = ScriptedModel([1.0])

        with pytest.raises(EmptyInputError):
            asyncio.run(_embedder(model).embed_with_retry(" "))
        assert model.texts == []


class TestClassifyProviderError:
    """Tests for provider error classification."""

    def test_status_codes(self):
        assert isinstance(classify_provider_error(StatusError("slow down", 429)), EmbeddingQuotaError)
        assert isinstance(classify_provider_error(StatusError("nope", 403)), EmbeddingCredentialsError)

    def test_transient(self):
        assert classify_provider_error(StatusError("internal", 500)) is None
        assert classify_provider_error(TimeoutError("deadline")) is None
