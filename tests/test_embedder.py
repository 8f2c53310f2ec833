# =============================================================================
# Unit Tests — Embedding Client
# =============================================================================
#
# The OpenAI client is replaced with a MagicMock returning canned
# embeddings responses; no API key or network access is needed.
# =============================================================================

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from app.config import settings
from app.exceptions import EmbeddingDimensionError
from app.services import embedder
from app.services.rate_limiter import reset_rate_limiters


def _response(vectors, reverse=False):
    data = [SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    if reverse:
        data.reverse()
    return SimpleNamespace(data=data, usage=SimpleNamespace(prompt_tokens=10))


@pytest.fixture(autouse=True)
def small_index():
    reset_rate_limiters()
    with patch.object(settings, "embedding_dimensions", 3):
        yield
    reset_rate_limiters()


class TestEmbedBatch:
    def test_empty_input_makes_no_call(self):
        with patch.object(embedder, "_get_client") as get_client:
            assert embedder.embed_batch([]) == []
        get_client.assert_not_called()

    def test_batches_and_preserves_order(self):
        client = MagicMock()
        client.embeddings.create.side_effect = [
            _response([[1.0, 0, 0], [2.0, 0, 0]], reverse=True),
            _response([[3.0, 0, 0]]),
        ]
        with patch.object(embedder, "_get_client", return_value=client):
            vectors = embedder.embed_batch(["a", "b", "c"], batch_size=2)

        assert vectors == [[1.0, 0, 0], [2.0, 0, 0], [3.0, 0, 0]]
        assert client.embeddings.create.call_count == 2
        first_call = client.embeddings.create.call_args_list[0].kwargs
        assert first_call["input"] == ["a", "b"]
        assert first_call["dimensions"] == 3

    def test_wrong_width_fails_loudly(self):
        client = MagicMock()
        client.embeddings.create.return_value = _response([[1.0, 0.0]])
        with patch.object(embedder, "_get_client", return_value=client):
            with pytest.raises(EmbeddingDimensionError) as exc_info:
                embedder.embed_batch(["a"])
        assert (exc_info.value.expected, exc_info.value.actual) == (3, 2)

    def test_missing_vector_is_an_error(self):
        client = MagicMock()
        client.embeddings.create.return_value = _response([[1.0, 0, 0]])
        with patch.object(embedder, "_get_client", return_value=client):
            with pytest.raises(EmbeddingDimensionError):
                embedder.embed_batch(["a", "b"], batch_size=2)

    def test_transient_error_is_retried(self):
        client = MagicMock()
        client.embeddings.create.side_effect = [ConnectionResetError(), _response([[1.0, 0, 0]])]
        with (
            patch.object(embedder, "_get_client", return_value=client),
            patch.object(settings, "transient_base_delay_seconds", 0.0),
        ):
            assert embedder.embed_query("deposit growth") == [1.0, 0, 0]
        assert client.embeddings.create.call_count == 2


class TestClientConfiguration:
    def test_missing_key_raises(self):
        with (
            patch.object(embedder, "_client", None),
            patch.object(settings, "openai_api_key", ""),
            patch.object(settings, "llm_api_key", None),
        ):
            with pytest.raises(ValueError, match="No API key"):
                embedder._get_client()

    def test_check_dimensions_with_explicit_width(self):
        embedder.check_dimensions([0.0] * 5, expected=5)
        with pytest.raises(EmbeddingDimensionError):
            embedder.check_dimensions([0.0] * 5, expected=4)
