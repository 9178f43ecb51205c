"""Embedding utilities wrapping OpenAI's embeddings API.

Provides:
- get_client: Cached OpenAI client using the configured API key.
- Embedder: Protocol the pipelines depend on.
- OpenAIEmbedder: embed a single text or a batch with per-text failure isolation.
- get_embedder: Cached process-wide OpenAIEmbedder.

Every call is treated as fallible: transport, quota and malformed responses
surface as EmbeddingUnavailable. Models and dimensions are configured via
wellness_kb.config.settings.
"""
import logging
from typing import List, Optional, Protocol, Sequence, Union

from openai import OpenAI, OpenAIError

from wellness_kb.config import settings
from wellness_kb.exceptions import EmbeddingUnavailable
from wellness_kb.utils import normalize_for_embedding

logger = logging.getLogger(__name__)

Vector = List[float]
EmbeddingOutcome = Union[Vector, EmbeddingUnavailable]

_client: Optional[OpenAI] = None
_embedder: Optional["OpenAIEmbedder"] = None


def get_client() -> OpenAI:
    """Return a cached OpenAI client initialized with the configured API key.

    Returns:
        OpenAI: A singleton-like client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = OpenAI(
            api_key=settings.OPENAI_API_KEY,
            timeout=settings.EMBEDDING_TIMEOUT_SECONDS,
            max_retries=settings.EMBEDDING_MAX_RETRIES,
        )
    return _client


class Embedder(Protocol):
    """Converts text into fixed-length vectors."""

    def embed(self, text: str) -> Vector:
        """Embed one text or raise EmbeddingUnavailable."""

    def embed_many(self, texts: Sequence[str]) -> List[EmbeddingOutcome]:
        """Embed several texts; each slot holds a vector or the error for that text."""


class OpenAIEmbedder:
    """Embedding backend calling the OpenAI embeddings endpoint."""

    def __init__(self, client: Optional[OpenAI] = None, model: Optional[str] = None, dim: Optional[int] = None):
        self._client = client
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.dim = dim or settings.EMBEDDING_DIM

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_client()
        return self._client

    def embed(self, text: str) -> Vector:
        """Embed a single text.

        Args:
            text: Input text; newlines are collapsed before the call.

        Returns:
            List[float]: Vector of length self.dim.

        Raises:
            ValueError: If the text is empty after normalization.
            EmbeddingUnavailable: On transport, quota or dimension errors.
        """
        clean = normalize_for_embedding(text)
        if not clean:
            raise ValueError("cannot embed empty text")
        return self._request([clean])[0]

    def embed_many(self, texts: Sequence[str]) -> List[EmbeddingOutcome]:
        """Embed a batch of texts, isolating failures per text.

        One request is sent for the whole batch. If it fails, each text is retried
        on its own so a single bad input does not fail its neighbours.

        Args:
            texts: Texts to embed.

        Returns:
            List: One entry per input, either a vector or the EmbeddingUnavailable
            raised for that text.
        """
        if not texts:
            return []
        cleaned = [normalize_for_embedding(t) for t in texts]
        if all(cleaned):
            try:
                return list(self._request(cleaned))
            except EmbeddingUnavailable as exc:
                logger.warning("Batch embedding of %d texts failed, retrying individually: %s", len(texts), exc)

        outcomes: List[EmbeddingOutcome] = []
        for clean in cleaned:
            if not clean:
                outcomes.append(EmbeddingUnavailable("cannot embed empty text"))
                continue
            try:
                outcomes.append(self._request([clean])[0])
            except EmbeddingUnavailable as exc:
                outcomes.append(exc)
        return outcomes

    def _request(self, inputs: List[str]) -> List[Vector]:
        try:
            resp = self.client.embeddings.create(model=self.model, input=inputs)
        except OpenAIError as exc:
            logger.error("Error getting embedding from OpenAI: %s", exc)
            raise EmbeddingUnavailable(str(exc)) from exc

        vectors = [list(d.embedding) for d in sorted(resp.data, key=lambda d: d.index)]
        if len(vectors) != len(inputs):
            raise EmbeddingUnavailable(
                f"embedding service returned {len(vectors)} vectors for {len(inputs)} inputs"
            )
        for vector in vectors:
            if len(vector) != self.dim:
                raise EmbeddingUnavailable(
                    f"embedding dimension mismatch: expected {self.dim}, got {len(vector)}"
                )
        return vectors


def get_embedder() -> OpenAIEmbedder:
    """Return the cached process-wide embedder."""
    global _embedder
    if _embedder is None:
        _embedder = OpenAIEmbedder()
    return _embedder
