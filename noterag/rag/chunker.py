"""Sentence-respecting text chunking for the RAG pipeline.

Character-based, so no tokenizer dependency. Sentences are never split:
a sentence longer than the chunk size becomes its own oversized chunk.
"""
import re
from typing import List, Optional

import structlog

from noterag import config

logger = structlog.get_logger()

# Runs ending in terminal punctuation, or trailing text without any
SENTENCE_PATTERN = re.compile(r"[^.!?]*[.!?]+|[^.!?]+")


class TextChunker:
    """Greedy sentence accumulator bounded by a maximum chunk size."""

    def __init__(self, max_chunk_size: Optional[int] = None):
        """Initialize the text chunker.

        Args:
            max_chunk_size: Target chunk size in characters (default from config)

        Raises:
            ValueError: If max_chunk_size is not a positive integer
        """
        if max_chunk_size is None:
            max_chunk_size = config.MAX_CHUNK_SIZE

        if not isinstance(max_chunk_size, int) or max_chunk_size <= 0:
            raise ValueError(f"max_chunk_size must be a positive integer, got {max_chunk_size!r}")

        self.max_chunk_size = max_chunk_size

    @staticmethod
    def split_sentences(text: str) -> List[str]:
        """Split text on terminal punctuation.

        Joining the returned pieces gives back ``text`` exactly.
        """
        sentences = SENTENCE_PATTERN.findall(text)
        return sentences or [text]

    def chunk(self, text: str) -> List[str]:
        """Split text into chunks of at most max_chunk_size where possible.

        Args:
            text: Plain text to chunk

        Returns:
            Ordered list of non-empty, stripped chunks
        """
        if not text or not text.strip():
            return []

        if len(text) <= self.max_chunk_size:
            return [text.strip()]

        chunks: List[str] = []
        buffer = ""

        for sentence in self.split_sentences(text):
            if len(buffer) + len(sentence) > self.max_chunk_size and buffer:
                self._flush(buffer, chunks)
                buffer = sentence
            else:
                buffer += sentence

        self._flush(buffer, chunks)

        logger.debug(
            "text_chunked",
            text_length=len(text),
            **get_chunk_stats(chunks),
        )

        return chunks

    @staticmethod
    def _flush(buffer: str, chunks: List[str]) -> None:
        stripped = buffer.strip()
        if stripped:
            chunks.append(stripped)


def get_chunk_stats(chunks: List[str]) -> dict:
    """Get statistics about a set of chunks.

    Args:
        chunks: Chunk strings

    Returns:
        Dictionary with chunk statistics
    """
    if not chunks:
        return {
            "chunk_count": 0,
            "total_chars": 0,
            "avg_chunk_size": 0,
            "min_chunk_size": 0,
            "max_chunk_size": 0,
        }

    chunk_sizes = [len(c) for c in chunks]

    return {
        "chunk_count": len(chunks),
        "total_chars": sum(chunk_sizes),
        "avg_chunk_size": sum(chunk_sizes) // len(chunks),
        "min_chunk_size": min(chunk_sizes),
        "max_chunk_size": max(chunk_sizes),
    }


def chunk_text(text: str, max_chunk_size: Optional[int] = None) -> List[str]:
    """Chunk text with a one-off chunker (convenience function)."""
    return TextChunker(max_chunk_size).chunk(text)
