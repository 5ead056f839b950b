"""
Embedding collaborators for the Knowledge Base.

The indexing pipeline and the searcher only depend on the
:class:`Embedder` protocol (``embed(text) -> list[float]``) and a
``similarity(a, b) -> float`` function, so the model is pluggable.

Two implementations ship:
  - :class:`HashingEmbedder` — deterministic feature hashing of word
    tokens; no network, no model download.  Default.
  - :class:`OpenAIEmbedder` — OpenAI Embeddings API
    (``text-embedding-3-small``); requires the ``semantic`` extra.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
import time
from typing import Callable, List, Protocol

logger = logging.getLogger(__name__)

EMBED_MODEL = "text-embedding-3-small"
MAX_RETRIES = 3

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*|\d+")

Similarity = Callable[[List[float], List[float]], float]


class Embedder(Protocol):
    """Anything that can turn text into a vector."""

    def embed(self, text: str) -> list[float]:
        ...


def cosine_similarity(a: List[float], b: List[float]) -> float:
    """Compute cosine similarity between two vectors without numpy."""
    if not a or not b or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


def _split_identifier(token: str) -> list[str]:
    """``parseJsonConfig`` / ``parse_json`` → component words."""
    parts = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", token).replace("_", " ").split()
    return [p.lower() for p in parts if p]


class HashingEmbedder:
    """
    Bag-of-words feature hashing into a fixed number of dimensions.

    Identifiers are also split on camelCase and underscores so that
    ``loadConfig`` and "load config" land near each other.  Output vectors
    are L2-normalised.

    Parameters
    ----------
    dimensions:
        Vector size.
    """

    def __init__(self, dimensions: int = 256) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    def embed(self, text: str) -> list[float]:
        vec = [0.0] * self.dimensions
        for token in _TOKEN_RE.findall(text):
            words = {token.lower(), *_split_identifier(token)}
            for word in words:
                digest = hashlib.blake2b(word.encode("utf-8"), digest_size=8).digest()
                bucket = int.from_bytes(digest[:4], "little") % self.dimensions
                sign = 1.0 if digest[4] & 1 else -1.0
                vec[bucket] += sign
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0.0:
            return vec
        return [v / norm for v in vec]


class OpenAIEmbedder:
    """
    Embeds text via the OpenAI Embeddings API.

    Parameters
    ----------
    api_key:
        OpenAI API key.
    model:
        Embedding model name.
    base_url:
        API base URL (for compatible local servers).
    """

    def __init__(
        self,
        api_key: str,
        model: str = EMBED_MODEL,
        base_url: str | None = None,
    ) -> None:
        if not api_key:
            raise EnvironmentError(
                "OPENAI_API_KEY environment variable is not set."
            )
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise ImportError(
                "openai package is required for the OpenAI embedder. "
                "Install it with: pip install 'knowledge_sync[semantic]'"
            ) from exc
        self._client = openai.OpenAI(api_key=api_key, base_url=base_url)
        self.model = model

    def embed(self, text: str) -> list[float]:
        last_exc: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.embeddings.create(model=self.model, input=[text])
                return list(response.data[0].embedding)
            except Exception as exc:
                last_exc = exc
                logger.warning(
                    "[KB] Embedding attempt %d/%d failed: %s", attempt, MAX_RETRIES, exc
                )
                if attempt < MAX_RETRIES:
                    time.sleep(2 ** (attempt - 1))
        raise RuntimeError(f"Embedding failed after {MAX_RETRIES} attempts: {last_exc}")


def create_embedder(config) -> Embedder:
    """
    Build the embedder selected by *config* (``hashing`` | ``openai``).
    """
    name = (config.EMBEDDER or "hashing").lower()
    if name == "openai":
        return OpenAIEmbedder(
            api_key=config.OPENAI_API_KEY,
            model=config.EMBEDDING_MODEL,
            base_url=config.OPENAI_BASE_URL,
        )
    if name == "hashing":
        return HashingEmbedder(dimensions=config.EMBEDDING_DIMENSIONS)
    raise ValueError(f"Unknown embedder: {config.EMBEDDER!r}")
