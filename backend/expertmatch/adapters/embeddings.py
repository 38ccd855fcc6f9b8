from __future__ import annotations

import hashlib
import logging
import math
import random
from dataclasses import dataclass
from typing import Iterable, List, Protocol

import httpx

try:  # pragma: no cover - optional heavy dependency
    from sentence_transformers import SentenceTransformer
except Exception:  # pragma: no cover - capture keras/tf issues as well
    SentenceTransformer = None  # type: ignore

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    def embed_texts(self, texts: Iterable[str]) -> List[List[float]]:
        ...


def embed_query(provider: EmbeddingProvider, text: str) -> List[float]:
    """Embed a single query string."""
    vectors = provider.embed_texts([text])
    if not vectors:
        raise RuntimeError("Embedding provider returned no vector for query")
    return vectors[0]


@dataclass
class OllamaEmbeddingProvider:
    model: str
    host: str = "http://localhost:11434"
    timeout: float = 10.0

    def embed_texts(self, texts: Iterable[str]) -> List[List[float]]:
        inputs = list(texts)
        if not inputs:
            return []
        url = f"{self.host.rstrip('/')}/api/embed"
        try:
            response = httpx.post(url, json={"model": self.model, "input": inputs}, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:  # pragma: no cover - network dependent
            raise RuntimeError(f"Ollama embed request failed: {exc}") from exc
        embeddings = response.json().get("embeddings")
        if not isinstance(embeddings, list) or len(embeddings) != len(inputs):
            raise RuntimeError("Invalid response from Ollama embed API")
        return embeddings


class SentenceTransformersEmbeddingProvider:
    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        if SentenceTransformer is None:  # pragma: no cover - optional dependency
            raise RuntimeError("sentence-transformers is not installed")
        self._model = SentenceTransformer(model_name)

    def embed_texts(self, texts: Iterable[str]) -> List[List[float]]:
        embeddings = self._model.encode(list(texts), convert_to_numpy=False, normalize_embeddings=True)
        return [embedding.tolist() for embedding in embeddings]


class StubEmbeddingProvider:
    """Hash-seeded unit vectors; identical text always maps to the identical vector."""

    def __init__(self, dim: int = 384):
        self.dim = dim

    def embed_texts(self, texts: Iterable[str]) -> List[List[float]]:
        results: List[List[float]] = []
        for text in texts:
            seed = hashlib.sha256(text.strip().lower().encode("utf-8")).digest()
            rnd = random.Random(seed)
            vector = [rnd.uniform(-1.0, 1.0) for _ in range(self.dim)]
            norm = math.sqrt(sum(v * v for v in vector)) or 1.0
            results.append([v / norm for v in vector])
        return results


def get_embedding_provider(settings) -> EmbeddingProvider:
    provider = (getattr(settings, "embed_provider", "stub") or "stub").lower()

    if provider == "ollama":
        return OllamaEmbeddingProvider(
            model=getattr(settings, "ollama_embed_model", "nomic-embed-text"),
            host=getattr(settings, "ollama_host", "http://localhost:11434"),
        )

    if provider == "sentence":
        return SentenceTransformersEmbeddingProvider(model_name=getattr(settings, "embed_model_name", "all-MiniLM-L6-v2"))

    if provider == "stub":
        return StubEmbeddingProvider()

    raise ValueError(f"Unknown embedding provider: {provider}")


def safe_embedding_provider(settings) -> EmbeddingProvider:
    """Like get_embedding_provider, but degrade to stub embeddings instead of failing startup."""
    try:
        return get_embedding_provider(settings)
    except Exception as exc:
        logger.warning("Falling back to stub embeddings (%s)", exc)
        return StubEmbeddingProvider()
