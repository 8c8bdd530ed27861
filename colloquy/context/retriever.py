"""Retrieval capability and an in-memory reference index"""

from typing import Optional, Dict, Any, List, Protocol, Sequence
import numpy as np

from colloquy.models.retrieval import RetrievedChunk


def ranking_key(chunk: RetrievedChunk):
    """Score descending, then newer recency first, then chunk id ascending"""
    recency = chunk.recency.timestamp() if chunk.recency else float("-inf")
    return (-chunk.score, -recency, chunk.chunk_id)


class Retriever(Protocol):
    """Retrieval capability: {queryVector, k, filters} -> ranked chunks"""

    async def search(
        self,
        query_vector: Sequence[float],
        k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RetrievedChunk]:
        ...


class InMemoryVectorIndex:
    """
    Brute-force cosine similarity over normalized vectors

    Meant for tests and small corpora; production deployments plug a real
    vector store in behind the Retriever protocol.
    """

    def __init__(self, dimension: int):
        self.dimension = dimension
        self.vectors = np.zeros((0, dimension), dtype="float32")
        self.chunks: List[RetrievedChunk] = []

    def add(self, chunk: RetrievedChunk, vector: Sequence[float]):
        """Index a chunk under its embedding"""
        embedding = self._normalize(vector)
        self.vectors = np.vstack([self.vectors, embedding.reshape(1, -1)])
        self.chunks.append(chunk)

    async def search(
        self,
        query_vector: Sequence[float],
        k: int,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[RetrievedChunk]:
        if not self.chunks or k <= 0:
            return []

        query = self._normalize(query_vector)
        similarities = self.vectors @ query

        candidates = []
        for idx, similarity in enumerate(similarities):
            chunk = self.chunks[idx]
            if filters and any(chunk.metadata.get(key) != value for key, value in filters.items()):
                continue
            candidates.append(chunk.model_copy(update={"score": float(similarity)}))

        # Full ranking before the k cut
        candidates.sort(key=ranking_key)
        return candidates[:k]

    def _normalize(self, vector: Sequence[float]) -> np.ndarray:
        embedding = np.asarray(vector, dtype="float32")
        if embedding.shape != (self.dimension,):
            raise ValueError(f"Expected vector of dimension {self.dimension}, got {embedding.shape}")
        norm = np.linalg.norm(embedding)
        return embedding / norm if norm > 0 else embedding
