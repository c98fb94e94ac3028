"""Quart application exposing note indexing, retrieval and chat."""
import math
from typing import Optional

import structlog
from quart import Quart, jsonify, request

from noterag import config, db
from noterag.errors import (
    ContentTooShort,
    EmbeddingServiceError,
    NoteNotFound,
    RAGError,
    StoreUnavailable,
    Unauthorized,
    UnsupportedUpload,
)
from noterag.llm_client import OllamaClient
from noterag.logging_setup import configure_logging
from noterag.rag.service import RAGService

configure_logging()

logger = structlog.get_logger()

app = Quart(__name__)

_rag_service: Optional[RAGService] = None
_chat_client: Optional[OllamaClient] = None

BASE_INSTRUCTIONS = """You are a helpful AI assistant that helps users with their notes and questions.
"""

ANSWER_INSTRUCTIONS = """If you use information from the notes, mention it naturally in your response.
If the question cannot be answered with the provided context or is a simple question, answer based on your general knowledge.
Be concise, helpful, and friendly."""


def get_chat_client() -> OllamaClient:
    global _chat_client
    if _chat_client is None:
        _chat_client = OllamaClient()
    return _chat_client


def get_rag_service() -> RAGService:
    """Get or create the RAG service, sharing the chat client's connection settings."""
    global _rag_service
    if _rag_service is None:
        _rag_service = RAGService.from_config(backend=get_chat_client())
    return _rag_service


def build_system_prompt(context: str) -> str:
    """System instruction for the chat model, with note context when present."""
    if context:
        return (
            BASE_INSTRUCTIONS
            + f"Use the following context from the user's notes to answer their question:\n\n{context}\n\n"
            + ANSWER_INSTRUCTIONS
        )
    return BASE_INSTRUCTIONS + ANSWER_INSTRUCTIONS


def _owner_id() -> Optional[str]:
    owner_id = request.headers.get("X-User-Id", "").strip()
    return owner_id or None


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _unauthorized():
    return jsonify({"error": "Unauthorized"}), 401


def _error_response(error: Exception, event: str, **context):
    """Map pipeline errors to JSON error responses."""
    if isinstance(error, (NoteNotFound, Unauthorized)):
        return jsonify({"error": "Note not found"}), 404
    if isinstance(error, ContentTooShort):
        return jsonify({"error": "Note content is too short to embed"}), 400
    if isinstance(error, UnsupportedUpload):
        return jsonify({"error": str(error)}), 400
    if isinstance(error, EmbeddingServiceError):
        logger.error(event, error=str(error), **context)
        return jsonify({"error": "Embedding service unavailable"}), 502
    if isinstance(error, StoreUnavailable):
        logger.error(event, error=str(error), **context)
        return jsonify({"error": "Storage unavailable"}), 503

    logger.error(event, error=str(error), error_type=type(error).__name__, **context)
    return jsonify({"error": "An error occurred processing your request. Please try again."}), 500


@app.before_serving
async def startup():
    await db.init_database(get_rag_service().store.db_path)


@app.route("/api/notes", methods=["POST"])
async def create_note():
    """Create a note and index it.

    Expects JSON body:
    {
        "title": "note title",
        "content": {...editor document...},
        "tags": ["optional"]
    }

    The note is created even when indexing fails; the response says so.
    """
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    data = await request.get_json() or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        return jsonify({"error": "Title is required"}), 400
    title = title.strip()

    tags = data.get("tags")
    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags)
    ):
        return jsonify({"error": "Tags must be a list of strings"}), 400

    service = get_rag_service()

    try:
        note = await service.notes.create_note(
            owner_id, title, content=data.get("content"), tags=tags
        )
    except Exception as e:
        return _error_response(e, "note_create_error", owner_id=owner_id)

    response = {"note": note.to_dict(), "indexed": False, "chunks_created": 0}

    try:
        result = await service.orchestrator.reindex_document(
            note.id, owner_id, note.content, title=note.title
        )
        response["indexed"] = not result.skipped
        response["chunks_created"] = result.chunks_created
    except RAGError as e:
        logger.warning("note_index_on_create_failed", note_id=note.id, error=str(e))
        response["index_error"] = type(e).__name__

    return jsonify(response), 201


@app.route("/api/notes/<note_id>", methods=["DELETE"])
async def delete_note(note_id: str):
    """Delete a note and its chunks."""
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    try:
        chunks_removed = await get_rag_service().delete_note(note_id, owner_id)
    except Exception as e:
        return _error_response(e, "note_delete_error", note_id=note_id)

    return jsonify({"success": True, "chunks_removed": chunks_removed})


@app.route("/api/notes/<note_id>", methods=["PUT"])
async def update_note(note_id: str):
    """Save new note content and reindex it.

    Expects JSON body:
    {
        "content": {...editor document...},
        "title": "optional new title"
    }

    The content is saved even when reindexing fails; the response says so.
    """
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    data = await request.get_json() or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    if "content" not in data:
        return jsonify({"error": "Content is required"}), 400

    title = data.get("title")
    if title is not None and (not isinstance(title, str) or not title.strip()):
        return jsonify({"error": "Title must be a non-empty string"}), 400

    service = get_rag_service()
    response = {"indexed": False, "chunks_created": 0}

    try:
        note, result = await service.update_note(
            note_id, owner_id, data["content"], title=title.strip() if title else None
        )
        response["indexed"] = not result.skipped
        response["chunks_created"] = result.chunks_created
    except (ContentTooShort, EmbeddingServiceError) as e:
        # Content is saved; only the index is behind
        logger.warning("note_index_on_update_failed", note_id=note_id, error=str(e))
        response["index_error"] = type(e).__name__
        note = await service.notes.get_note(note_id)
    except Exception as e:
        return _error_response(e, "note_update_error", note_id=note_id)

    response["note"] = note.to_dict()
    return jsonify(response)


@app.route("/api/index/stats", methods=["GET"])
async def index_stats():
    """Chunk counts, embedding models and the latest reindex run of the caller."""
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    try:
        stats = await get_rag_service().index_stats(owner_id)
    except Exception as e:
        return _error_response(e, "index_stats_error", owner_id=owner_id)

    return jsonify(stats)


@app.route("/api/notes/<note_id>/embed", methods=["POST"])
async def embed_note(note_id: str):
    """Reindex one note of the caller."""
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    try:
        result = await get_rag_service().index_document(note_id, owner_id)
    except Exception as e:
        return _error_response(e, "note_embed_error", note_id=note_id)

    if result.skipped:
        return jsonify({"error": "Note content is too short to embed"}), 400

    return jsonify({
        "success": True,
        "message": f"Successfully embedded {result.chunks_created} chunks from note",
        "chunks_created": result.chunks_created,
    })


@app.route("/api/notes/embed-all", methods=["POST"])
async def embed_all_notes():
    """Reindex every note of the caller and report per-note tallies."""
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    try:
        result = await get_rag_service().reindex_all_for_owner(owner_id)
    except Exception as e:
        return _error_response(e, "embed_all_error", owner_id=owner_id)

    return jsonify({
        "success": True,
        "message": f"Embedded {result.success_count} notes successfully",
        "success_count": result.success_count,
        "error_count": result.error_count,
        "skipped_count": result.skipped_count,
        "total_notes": result.total_documents,
    })


@app.route("/api/upload", methods=["POST"])
async def upload():
    """Create and index a note from an uploaded .txt or .md file."""
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    files = await request.files
    file = files.get("file")
    if file is None:
        return jsonify({"error": "No file provided"}), 400

    try:
        note, result = await get_rag_service().index_upload(
            owner_id, file.filename, file.content_type, file.read()
        )
    except Exception as e:
        return _error_response(e, "upload_error", filename=file.filename)

    return jsonify({
        "success": True,
        "message": "File uploaded and embedded successfully",
        "note_id": note.id,
        "note_title": note.title,
        "chunks_created": result.chunks_created,
    }), 201


@app.route("/api/retrieve", methods=["POST"])
async def retrieve():
    """Return note context for a query.

    Expects JSON body:
    {
        "query": "text",
        "limit": 5,          // optional
        "threshold": 0.3     // optional
    }
    """
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    data = await request.get_json() or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    query = data.get("query")
    if not isinstance(query, str) or not query.strip():
        return jsonify({"error": "Query is required"}), 400

    limit = data.get("limit")
    if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit < 1):
        return jsonify({"error": "Limit must be a positive integer"}), 400

    threshold = data.get("threshold")
    if threshold is not None and (not _is_number(threshold) or not math.isfinite(threshold)):
        return jsonify({"error": "Threshold must be a number"}), 400

    retrieved = await get_rag_service().retrieve_context(
        query.strip(),
        owner_id,
        limit=limit,
        threshold=float(threshold) if threshold is not None else None,
    )

    return jsonify({
        "context": retrieved.context,
        "context_note_ids": retrieved.used_document_ids,
        "sources": retrieved.sources(),
    })


@app.route("/api/chat", methods=["POST"])
async def chat():
    """Answer a message using the caller's notes as context.

    Expects JSON body:
    {
        "message": "user message text",
        "context_note_ids": ["optional", "note", "ids"]
    }

    Returns JSON:
    {
        "message": "assistant response text",
        "model": "model_name",
        "context_used": true,
        "context_note_ids": [...],
        "sources": [...]
    }
    """
    owner_id = _owner_id()
    if owner_id is None:
        return _unauthorized()

    data = await request.get_json() or {}
    if not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    message = data.get("message")

    if not message or not isinstance(message, str) or not message.strip():
        return jsonify({"error": "Message is required"}), 400

    message = message.strip()
    if len(message) > config.MAX_MESSAGE_LENGTH:
        return jsonify({
            "error": f"Message too long (max {config.MAX_MESSAGE_LENGTH} characters)"
        }), 400

    context_note_ids = data.get("context_note_ids") or []
    if not isinstance(context_note_ids, list) or not all(
        isinstance(note_id, str) for note_id in context_note_ids
    ):
        return jsonify({"error": "context_note_ids must be a list of note ids"}), 400

    service = get_rag_service()

    logger.info(
        "chat_request_received",
        owner_id=owner_id,
        message_length=len(message),
        selected_notes=len(context_note_ids),
    )

    if context_note_ids:
        retrieved = await service.selected_notes_context(owner_id, context_note_ids)
    else:
        retrieved = await service.retrieve_context(
            message, owner_id, limit=config.CHAT_RETRIEVAL_LIMIT
        )

    messages = [
        {"role": "system", "content": build_system_prompt(retrieved.context)},
        {"role": "user", "content": f"User question: {message}"},
    ]

    try:
        response = await get_chat_client().chat(messages)
    except Exception as e:
        logger.error("chat_endpoint_error", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to process chat message"}), 500

    answer = response.get("message", {}).get("content", "")

    logger.info(
        "chat_response_sent",
        owner_id=owner_id,
        response_length=len(answer),
        used_rag=retrieved.used,
    )

    return jsonify({
        "message": answer,
        "model": config.CHAT_MODEL,
        "context_used": retrieved.used,
        "context_note_ids": retrieved.used_document_ids,
        "sources": retrieved.sources(),
    })


@app.route("/health/ready")
async def health_ready():
    """Readiness probe - check that Ollama has the chat and embedding models."""
    checks = {
        "status": "healthy",
        "ollama": False,
        "models": False,
    }

    try:
        models = await get_chat_client().list_models()
        checks["ollama"] = True

        missing = [
            name
            for name in (config.CHAT_MODEL, config.EMBEDDING_MODEL)
            if name not in models and f"{name}:latest" not in models
        ]
        if missing:
            checks["status"] = "unhealthy"
            checks["error"] = f"Missing models: {', '.join(missing)}"
        else:
            checks["models"] = True

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503


@app.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


@app.errorhandler(404)
async def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
async def internal_error(error):
    logger.error("internal_server_error", error=str(error))
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    # For development - use hypercorn in production
    app.run(host="0.0.0.0", port=5000, debug=True)
