"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Text extraction from editor documents
- Sentence-respecting chunking
- Embedding generation
- Owner-scoped chunk storage
- Cosine similarity search
- Context assembly
- Reindex orchestration
"""
