"""Embedding generation with validation and bounded concurrency."""
import asyncio
import math
from typing import List, Optional, Protocol

import structlog

from noterag import config
from noterag.errors import EmbeddingServiceError

logger = structlog.get_logger()


class EmbeddingBackend(Protocol):
    """Anything with an Ollama-style ``embeddings`` coroutine."""

    async def embeddings(self, prompt: str, model: str = None) -> dict:
        ...


class EmbeddingClient:
    """Turns texts into fixed-dimension vectors through an embedding backend.

    Every text is one upstream request; there is no caching. Results are
    validated so callers never see a missing, short or non-numeric vector.
    """

    def __init__(
        self,
        backend: EmbeddingBackend,
        model: str = None,
        dimension: int = None,
        concurrency: int = None,
    ):
        """Initialize the embedding client.

        Args:
            backend: Embedding backend (usually an OllamaClient)
            model: Embedding model name (default from config)
            dimension: Expected vector dimension (default from config)
            concurrency: Max in-flight requests for embed_batch (default from config)
        """
        self.backend = backend
        self.model = model or config.EMBEDDING_MODEL
        self.dimension = dimension or config.EMBEDDING_DIMENSION
        self.concurrency = max(1, concurrency or config.EMBEDDING_CONCURRENCY)

    async def embed(self, text: str, index: Optional[int] = None) -> List[float]:
        """Embed a single text.

        Args:
            text: Text to embed
            index: Position of the text in a batch, for diagnostics

        Returns:
            Embedding vector of length ``self.dimension``

        Raises:
            EmbeddingServiceError: If the call fails or the vector is malformed
        """
        try:
            response = await self.backend.embeddings(prompt=text, model=self.model)
        except Exception as e:
            error = EmbeddingServiceError(
                f"Failed to generate embedding: {e}", text=text, index=index
            )
            logger.error(
                "embedding_generation_failed",
                model=self.model,
                index=index,
                text_preview=error.text_preview,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise error from e

        embedding = response.get("embedding") if isinstance(response, dict) else None
        return self._validate(embedding, text, index)

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts, one request each, results aligned to inputs.

        Raises:
            EmbeddingServiceError: On the first failing text; no partial result
        """
        if not texts:
            return []

        semaphore = asyncio.Semaphore(self.concurrency)

        async def embed_one(index: int, text: str) -> List[float]:
            async with semaphore:
                return await self.embed(text, index=index)

        embeddings = await asyncio.gather(
            *(embed_one(i, text) for i, text in enumerate(texts))
        )

        logger.debug(
            "embeddings_batch_generated",
            count=len(embeddings),
            model=self.model,
        )

        return list(embeddings)

    def _validate(self, embedding, text: str, index: Optional[int]) -> List[float]:
        if not embedding or not isinstance(embedding, list):
            logger.error("embedding_missing", model=self.model, index=index)
            raise EmbeddingServiceError(
                "Empty embedding returned from embedding service", text=text, index=index
            )

        if len(embedding) != self.dimension:
            logger.error(
                "embedding_dimension_mismatch",
                model=self.model,
                expected=self.dimension,
                got=len(embedding),
                index=index,
            )
            raise EmbeddingServiceError(
                f"Embedding dimension mismatch: expected {self.dimension}, got {len(embedding)}",
                text=text,
                index=index,
            )

        try:
            vector = [float(v) for v in embedding]
        except (TypeError, ValueError) as e:
            raise EmbeddingServiceError(
                f"Embedding contains non-numeric values: {e}", text=text, index=index
            ) from e

        if not all(math.isfinite(v) for v in vector):
            raise EmbeddingServiceError(
                "Embedding contains non-finite values", text=text, index=index
            )

        return vector
