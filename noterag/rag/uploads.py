"""Parsing of uploaded text and markdown files into notes.

Handles:
- File type checks (plain text and markdown only)
- UTF-8 decoding
- YAML frontmatter (title, tags) on markdown uploads
"""
import re
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Dict, List, Tuple

import structlog
import yaml

from noterag import config
from noterag.errors import UnsupportedUpload

logger = structlog.get_logger()

ALLOWED_CONTENT_TYPES = ("text/plain", "text/markdown", "text/x-markdown")
ALLOWED_EXTENSIONS = (".txt", ".md", ".markdown")

# YAML frontmatter (must be at start of file)
FRONTMATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)


@dataclass
class ParsedUpload:
    """An uploaded file turned into note fields."""

    filename: str
    title: str
    text: str
    frontmatter: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)


def is_supported(filename: str, content_type: str = None) -> bool:
    suffix = PurePath(filename or "").suffix.lower()
    base_type = (content_type or "").split(";")[0].strip().lower()
    return base_type in ALLOWED_CONTENT_TYPES or suffix in ALLOWED_EXTENSIONS


def parse_frontmatter(content: str) -> Tuple[Dict[str, Any], str]:
    """Extract YAML frontmatter from markdown content.

    Returns:
        Tuple of (frontmatter_dict, content_without_frontmatter)
    """
    match = FRONTMATTER_PATTERN.match(content)
    if not match:
        return {}, content

    yaml_content = match.group(1)
    try:
        frontmatter = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        logger.warning(
            "frontmatter_parse_error",
            error=str(e),
            yaml_preview=yaml_content[:100],
        )
        return {}, content

    if not isinstance(frontmatter, dict):
        frontmatter = {}

    return frontmatter, content[match.end():]


def parse_upload(filename: str, content_type: str, data: bytes) -> ParsedUpload:
    """Turn an uploaded file into note fields.

    Args:
        filename: Original file name
        content_type: MIME type reported by the client
        data: Raw file bytes

    Returns:
        ParsedUpload with title, body text and tags

    Raises:
        UnsupportedUpload: For PDFs and other unsupported files, oversized
            files, or files that are not UTF-8 text
    """
    if not is_supported(filename, content_type):
        raise UnsupportedUpload("Only text and markdown files are supported")

    if len(data) > config.UPLOAD_MAX_BYTES:
        raise UnsupportedUpload(
            f"File too large ({len(data)} bytes, max {config.UPLOAD_MAX_BYTES})"
        )

    try:
        content = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        logger.error("upload_encoding_error", filename=filename, error=str(e))
        raise UnsupportedUpload("File is not valid UTF-8 text") from e

    frontmatter, body = parse_frontmatter(content)

    stem = PurePath(filename or "upload").stem or "upload"
    title = str(frontmatter.get("title") or stem)

    tags = ["uploaded"]
    raw_tags = frontmatter.get("tags")
    if isinstance(raw_tags, str):
        raw_tags = [raw_tags]
    if isinstance(raw_tags, list):
        tags.extend(str(tag) for tag in raw_tags if str(tag) not in tags)

    logger.info(
        "upload_parsed",
        filename=filename,
        has_frontmatter=bool(frontmatter),
        content_length=len(body),
    )

    return ParsedUpload(
        filename=filename,
        title=title,
        text=body.strip(),
        frontmatter=frontmatter,
        tags=tags,
    )
