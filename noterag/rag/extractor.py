"""Plain-text extraction from rich-text note documents.

Notes are stored as an editor node tree: every node has a ``type``, text
nodes carry a ``text`` value and container nodes carry an ordered
``content`` list of children.
"""
import json
from typing import Any, List

import structlog

logger = structlog.get_logger()

# Node types that end with a line break in the flattened text
BLOCK_TYPES = frozenset(
    {
        "paragraph",
        "heading",
        "blockquote",
        "codeBlock",
        "listItem",
        "taskItem",
        "bulletList",
        "orderedList",
        "taskList",
        "tableRow",
        "horizontalRule",
    }
)


def extract_text(document: Any) -> str:
    """Flatten a note document into plain text.

    Args:
        document: Node tree as a dict, or a JSON string encoding one. Any
            other string is treated as plain text.

    Returns:
        Extracted text, stripped. Empty or malformed input gives "".
    """
    if document is None:
        return ""

    if isinstance(document, str):
        try:
            parsed = json.loads(document)
        except ValueError:
            return document.strip()
        # "2024", "true" and other JSON scalars are still plain text
        if not isinstance(parsed, dict):
            return document.strip()
        document = parsed

    if not isinstance(document, dict):
        return ""

    children = document.get("content")
    if not isinstance(children, list):
        return ""

    parts: List[str] = []
    for child in children:
        _traverse(child, parts)

    text = "".join(parts).strip()

    logger.debug("text_extracted", text_length=len(text))

    return text


def _traverse(node: Any, parts: List[str]) -> None:
    """Depth-first, pre-order walk appending text leaves to ``parts``."""
    if not isinstance(node, dict):
        return

    node_type = node.get("type")

    if node_type == "text":
        text = node.get("text")
        if isinstance(text, str):
            parts.append(text)
    elif node_type == "hardBreak":
        parts.append("\n")

    children = node.get("content")
    if isinstance(children, list):
        for child in children:
            _traverse(child, parts)

    if node_type in BLOCK_TYPES:
        parts.append("\n")
