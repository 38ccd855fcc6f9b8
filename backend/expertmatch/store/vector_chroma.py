from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass
from typing import Dict, List, Protocol

import chromadb
from chromadb.config import Settings as ChromaSettings

from backend.expertmatch.adapters.embeddings import EmbeddingProvider, embed_query
from backend.expertmatch.core.errors import QueryValidationError

VectorRecord = Dict[str, object]

logger = logging.getLogger("expertmatch")


class VectorStore(Protocol):
    """Protocol describing the vector index used for profile similarity search."""

    def upsert(self, records: List[VectorRecord]) -> None:
        """Persist embeddings and document metadata."""

    def search(self, query_embedding: List[float], top_k: int = 5) -> List[VectorRecord]:
        """Return the closest records, each carrying a cosine ``similarity``."""

    def ping(self) -> bool:
        """Return True when the store is reachable."""


@dataclass
class VectorChromaStore:
    """Chroma collection in cosine space holding one document per expert."""

    path: str
    collection_name: str = "expert_profiles"

    def __post_init__(self) -> None:
        os.makedirs(self.path, exist_ok=True)
        client_settings = ChromaSettings(is_persistent=True, anonymized_telemetry=False)
        self._client = chromadb.PersistentClient(path=self.path, settings=client_settings)
        self._collection = self._open_collection()

    def upsert(self, records: List[VectorRecord]) -> None:
        if not records:
            return
        payload = {
            "ids": [str(record["id"]) for record in records],
            "documents": [str(record.get("text", "")) for record in records],
            "metadatas": [record.get("metadata") or {"source": "profile"} for record in records],
            "embeddings": [record.get("embedding") for record in records],
        }
        try:
            self._collection.upsert(**payload)
        except TypeError as exc:
            self._handle_metadata_corruption(exc)
            self._collection.upsert(**payload)

    def search(self, query_embedding: List[float], top_k: int = 5) -> List[VectorRecord]:
        try:
            results = self._collection.query(query_embeddings=[query_embedding], n_results=top_k)
        except TypeError as exc:
            self._handle_metadata_corruption(exc)
            return []
        ids = (results.get("ids") or [[]])[0]
        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]
        formatted: List[VectorRecord] = []
        for idx, record_id in enumerate(ids):
            distance = distances[idx] if idx < len(distances) else None
            formatted.append(
                {
                    "id": record_id,
                    "text": documents[idx] if idx < len(documents) else "",
                    "metadata": metadatas[idx] if idx < len(metadatas) else {},
                    "similarity": 1.0 - float(distance) if distance is not None else 0.0,
                }
            )
        return formatted

    def ping(self) -> bool:
        try:
            self._collection.count()
            return True
        except Exception:  # pragma: no cover - runtime state dependent
            return False

    def _open_collection(self):
        return self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )

    def _handle_metadata_corruption(self, exc: Exception) -> None:
        """Drop and recreate the collection when legacy metadata raises type errors."""

        logger.warning(
            "Incompatible Chroma metadata in %s at %s; recreating collection (%s)",
            self.collection_name,
            self.path,
            exc,
        )
        try:
            self._client.delete_collection(name=self.collection_name)
        except Exception as delete_exc:  # pragma: no cover - defensive
            logger.error("Failed to drop Chroma collection %s: %s", self.collection_name, delete_exc)
            raise
        self._collection = self._open_collection()


def _cosine(left: List[float], right: List[float]) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    norm = math.sqrt(sum(a * a for a in left)) * math.sqrt(sum(b * b for b in right))
    return dot / norm if norm else 0.0


class InMemoryVectorStore:
    """Brute-force cosine store for tests and database-free development."""

    def __init__(self) -> None:
        self._records: Dict[str, VectorRecord] = {}

    def upsert(self, records: List[VectorRecord]) -> None:
        for record in records:
            self._records[str(record["id"])] = record

    def search(self, query_embedding: List[float], top_k: int = 5) -> List[VectorRecord]:
        scored = []
        for record in self._records.values():
            similarity = _cosine(query_embedding, list(record.get("embedding") or []))
            scored.append(
                {
                    "id": record["id"],
                    "text": record.get("text", ""),
                    "metadata": record.get("metadata", {}),
                    "similarity": similarity,
                }
            )
        scored.sort(key=lambda item: -float(item["similarity"]))
        return scored[:top_k]

    def ping(self) -> bool:
        return True


@dataclass
class VectorSearch:
    """Text-in, ranked-records-out similarity search over a vector store."""

    store: VectorStore
    embedding_provider: EmbeddingProvider

    def search_by_text(self, query: str, limit: int, min_similarity: float) -> List[VectorRecord]:
        """Embed ``query`` and return up to ``limit`` records at or above ``min_similarity``."""

        if query is None or not query.strip():
            raise QueryValidationError("Vector search text must not be empty")
        if limit < 1:
            raise QueryValidationError(f"limit must be at least 1, got {limit}")
        embedding = embed_query(self.embedding_provider, query)
        hits = self.store.search(embedding, top_k=limit)
        return [hit for hit in hits if float(hit.get("similarity") or 0.0) >= min_similarity]
