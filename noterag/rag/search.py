"""Owner-scoped cosine similarity search over stored chunks.

Candidates are restricted to the querying owner before scoring. Scores are
cosine similarities from a FAISS inner-product index built over the
owner's L2-normalised vectors.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import faiss
import numpy as np
import structlog

from noterag import config
from noterag.errors import EmbeddingServiceError
from noterag.rag.embeddings import EmbeddingClient
from noterag.rag.store import EmbeddingStore

logger = structlog.get_logger()


@dataclass
class RetrievalResult:
    """A single retrieved chunk with its similarity to the query."""

    chunk_id: str
    document_id: str
    owner_id: str
    content: str
    similarity: float
    metadata: Dict[str, Any]
    created_at: str

    @property
    def title(self) -> str:
        return self.metadata.get("title", "")

    @property
    def relevance_percent(self) -> float:
        return self.similarity * 100


def normalise(vectors: np.ndarray) -> np.ndarray:
    """L2-normalise rows; all-zero rows stay zero."""
    vectors = np.ascontiguousarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms


class SimilaritySearch:
    """Top-K nearest chunk search for one owner at a time."""

    def __init__(
        self,
        store: EmbeddingStore,
        embedding_client: Optional[EmbeddingClient] = None,
    ):
        """Initialize the search engine.

        Args:
            store: Chunk store to search
            embedding_client: Used by search_text to embed queries
        """
        self.store = store
        self.embedding_client = embedding_client

    async def search(
        self,
        query_embedding: List[float],
        owner_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Find the owner's chunks most similar to a query vector.

        Args:
            query_embedding: Query vector (store dimension)
            owner_id: Only this owner's chunks are considered
            limit: Maximum results (default config.RETRIEVAL_LIMIT)
            threshold: Minimum similarity (default config.SIMILARITY_THRESHOLD)

        Returns:
            Results ordered by descending similarity

        Raises:
            ValueError: If the query vector has the wrong dimension
            StoreUnavailable: If the store cannot be read
        """
        limit = config.RETRIEVAL_LIMIT if limit is None else limit
        threshold = config.SIMILARITY_THRESHOLD if threshold is None else threshold

        if limit <= 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float32).reshape(1, -1)
        if query.shape[1] != self.store.dimension:
            raise ValueError(
                f"Query dimension mismatch: expected {self.store.dimension}, "
                f"got {query.shape[1]}"
            )

        candidates = await self.store.load_owner_vectors(owner_id)
        if not len(candidates):
            logger.info("search_no_candidates", owner_id=owner_id)
            return []

        index = faiss.IndexFlatIP(self.store.dimension)
        index.add(normalise(candidates.matrix))

        scores, positions = index.search(normalise(query), min(limit, len(candidates)))

        ranked = sorted(
            (
                (float(score), int(position))
                for score, position in zip(scores[0], positions[0])
                if position >= 0
            ),
            key=lambda pair: (-pair[0], pair[1]),
        )

        # Threshold after the limit; on a descending list this keeps a prefix
        ranked = [pair for pair in ranked[:limit] if pair[0] >= threshold]

        results = []
        for score, position in ranked:
            record = candidates.records[position]
            results.append(
                RetrievalResult(
                    chunk_id=record.id,
                    document_id=record.document_id,
                    owner_id=record.owner_id,
                    content=record.content,
                    similarity=score,
                    metadata=record.metadata,
                    created_at=record.created_at,
                )
            )

        logger.info(
            "vector_search_completed",
            owner_id=owner_id,
            candidates=len(candidates),
            limit=limit,
            threshold=threshold,
            results_found=len(results),
            top_similarity=results[0].similarity if results else None,
        )

        return results

    async def search_text(
        self,
        query: str,
        owner_id: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[RetrievalResult]:
        """Embed a query and search. Embedding failures give no results.

        Raises:
            StoreUnavailable: If the store cannot be read
        """
        if not query or not query.strip():
            logger.warning("empty_query_provided", owner_id=owner_id)
            return []

        if self.embedding_client is None:
            raise RuntimeError("search_text needs an embedding client")

        try:
            query_embedding = await self.embedding_client.embed(query)
        except EmbeddingServiceError as e:
            logger.warning(
                "query_embedding_failed",
                owner_id=owner_id,
                error=str(e),
                query_preview=query[:100],
            )
            return []

        return await self.search(query_embedding, owner_id, limit=limit, threshold=threshold)
