"""Prompt context assembly from retrieval results."""
from typing import List, Optional, Sequence

import structlog

from noterag import config
from noterag.rag.search import RetrievalResult

logger = structlog.get_logger()

CONTEXT_HEADER = "Here is relevant information from your notes:\n\n"


def format_block(result: RetrievalResult) -> str:
    """Format one result as a labelled context block."""
    return (
        f"[From your notes - Similarity: {result.relevance_percent:.1f}%]\n"
        f"{result.content}\n\n"
    )


def included_results(
    results: Sequence[RetrievalResult], max_context_length: Optional[int] = None
) -> List[RetrievalResult]:
    """Results whose blocks fit in the context budget, in ranking order.

    Blocks are added in order until the next one would push the running
    length past ``max_context_length``; that block and every later one are
    left out.

    The budget covers blocks only. ``build_context`` prepends
    ``CONTEXT_HEADER`` to any non-empty selection, so the assembled context
    is at most ``max_context_length + len(CONTEXT_HEADER)`` characters. When
    blocks are shorter than the header this exceeds
    ``max_context_length`` plus one block.
    """
    if max_context_length is None:
        max_context_length = config.MAX_CONTEXT_LENGTH

    included = []
    current_length = 0

    for result in results:
        block_length = len(format_block(result))
        if current_length + block_length > max_context_length:
            break
        included.append(result)
        current_length += block_length

    return included


def build_context(
    results: Sequence[RetrievalResult], max_context_length: Optional[int] = None
) -> str:
    """Build the context string handed to the chat model.

    Args:
        results: Retrieval results in ranking order
        max_context_length: Character budget for the blocks (default from config)

    Returns:
        Formatted context, or "" when there is nothing to include
    """
    if not results:
        return ""

    blocks = [format_block(result) for result in included_results(results, max_context_length)]

    if not blocks:
        logger.debug("context_budget_too_small", max_context_length=max_context_length)
        return ""

    context = CONTEXT_HEADER + "".join(blocks)

    logger.debug(
        "context_formatted",
        num_chunks=len(blocks),
        skipped_chunks=len(results) - len(blocks),
        total_chars=len(context),
    )

    return context
