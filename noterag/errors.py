"""Exception types raised by the RAG pipeline and its collaborators."""
from typing import Optional


class RAGError(Exception):
    """Base class for all noterag errors."""


class ContentTooShort(RAGError):
    """Extracted note text is below the minimum length policy.

    This is a rejected request, not a system failure.
    """

    def __init__(self, document_id: str, length: int, minimum: int):
        self.document_id = document_id
        self.length = length
        self.minimum = minimum
        super().__init__(
            f"Note {document_id} content is too short to embed "
            f"({length} < {minimum} characters)"
        )


class EmbeddingServiceError(RAGError):
    """The embedding service failed or returned a malformed vector."""

    def __init__(
        self,
        message: str,
        text: Optional[str] = None,
        index: Optional[int] = None,
    ):
        self.text = text
        self.index = index
        super().__init__(message)

    @property
    def text_preview(self) -> str:
        return (self.text or "")[:100]


class StoreUnavailable(RAGError):
    """The persistence layer failed."""


class NoteNotFound(RAGError):
    """The requested note does not exist."""

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"Note not found: {document_id}")


class Unauthorized(RAGError):
    """The note exists but belongs to another user."""

    def __init__(self, document_id: str, owner_id: str):
        self.document_id = document_id
        self.owner_id = owner_id
        super().__init__(f"User {owner_id} may not access note {document_id}")


class UnsupportedUpload(RAGError):
    """The uploaded file type or content cannot be indexed."""
