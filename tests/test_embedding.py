"""Tests for the OpenAI embedding backend with a mocked client."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import openai
import pytest

from wellness_kb.embedding import OpenAIEmbedder
from wellness_kb.exceptions import EmbeddingUnavailable


def _response(vectors):
    return SimpleNamespace(
        data=[SimpleNamespace(index=i, embedding=v) for i, v in enumerate(vectors)]
    )


def _client(side_effect=None, return_value=None) -> MagicMock:
    client = MagicMock()
    client.embeddings.create.side_effect = side_effect
    if return_value is not None:
        client.embeddings.create.return_value = return_value
    return client


def test_embed_sends_normalized_text() -> None:
    client = _client(return_value=_response([[0.1, 0.2, 0.3]]))
    embedder = OpenAIEmbedder(client=client, model="text-embedding-ada-002", dim=3)

    vector = embedder.embed("how do I\nsleep better?\n")

    assert vector == [0.1, 0.2, 0.3]
    client.embeddings.create.assert_called_once_with(
        model="text-embedding-ada-002", input=["how do I sleep better?"]
    )


def test_embed_rejects_empty_text() -> None:
    embedder = OpenAIEmbedder(client=_client(), dim=3)

    with pytest.raises(ValueError):
        embedder.embed(" \n ")


def test_transport_error_becomes_embedding_unavailable() -> None:
    client = _client(side_effect=openai.OpenAIError("quota exceeded"))
    embedder = OpenAIEmbedder(client=client, dim=3)

    with pytest.raises(EmbeddingUnavailable):
        embedder.embed("breathing")


def test_dimension_mismatch_is_rejected() -> None:
    client = _client(return_value=_response([[0.1, 0.2]]))
    embedder = OpenAIEmbedder(client=client, dim=3)

    with pytest.raises(EmbeddingUnavailable):
        embedder.embed("breathing")


def test_embed_many_preserves_input_order() -> None:
    resp = SimpleNamespace(
        data=[
            SimpleNamespace(index=1, embedding=[0.0, 1.0]),
            SimpleNamespace(index=0, embedding=[1.0, 0.0]),
        ]
    )
    embedder = OpenAIEmbedder(client=_client(return_value=resp), dim=2)

    assert embedder.embed_many(["first", "second"]) == [[1.0, 0.0], [0.0, 1.0]]


def test_embed_many_isolates_a_failing_text() -> None:
    def create(model, input):
        if len(input) > 1 or input[0] == "bad chunk":
            raise openai.OpenAIError("invalid input")
        return _response([[0.5, 0.5]])

    client = _client(side_effect=create)
    embedder = OpenAIEmbedder(client=client, dim=2)

    outcomes = embedder.embed_many(["good one", "bad chunk", "good two"])

    assert outcomes[0] == [0.5, 0.5]
    assert isinstance(outcomes[1], EmbeddingUnavailable)
    assert outcomes[2] == [0.5, 0.5]
    # one batch call plus one retry per text
    assert client.embeddings.create.call_count == 4


def test_embed_many_marks_empty_texts_as_failed() -> None:
    client = _client(return_value=_response([[1.0, 0.0]]))
    embedder = OpenAIEmbedder(client=client, dim=2)

    outcomes = embedder.embed_many(["   ", "fine"])

    assert isinstance(outcomes[0], EmbeddingUnavailable)
    assert outcomes[1] == [1.0, 0.0]
    assert embedder.embed_many([]) == []
