#!/usr/bin/env python
"""Reindex a user's notes for the RAG pipeline.

Usage:
    python scripts/reindex.py --owner USER_ID            # Reindex all notes of a user
    python scripts/reindex.py --owner USER_ID --note ID  # Reindex a single note
    python scripts/reindex.py --owner USER_ID --verbose  # Show detailed progress
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

import structlog

from noterag import config, db
from noterag.errors import RAGError
from noterag.logging_setup import configure_logging
from noterag.rag.service import RAGService

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, document):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {document.title[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Notes considered:   {stats['total_documents']}")
        print(f"  Notes indexed:      {stats['success_count']}")
        print(f"  Notes failed:       {stats['error_count']}")
        print(f"  Notes skipped:      {stats['skipped_count']}")
        print(f"  Chunks created:     {stats['chunks_created']}")
        print(f"  Time elapsed:       {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  Indexing rate:      {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["error_count"] > 0:
            print(f"Warning: {stats['error_count']} note(s) failed to index.")
            for note_id, error_type in stats["failed_documents"].items():
                print(f"   {note_id}: {error_type}")
            print()


async def main() -> int:
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Reindex notes for the RAG pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/reindex.py --owner alice
  python scripts/reindex.py --owner alice --note 3f2c...
        """,
    )
    parser.add_argument("--owner", required=True, help="Owner (user id) whose notes to index")
    parser.add_argument("--note", default=None, help="Reindex only this note")
    parser.add_argument(
        "--db",
        type=Path,
        default=None,
        help=f"SQLite database (default: {config.DB_PATH})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Show verbose progress output")

    args = parser.parse_args()

    configure_logging(level="DEBUG" if args.verbose else "WARNING", fmt="console")

    print("\nConfiguration:")
    print(f"   Database:         {args.db or config.DB_PATH}")
    print(f"   Embedding model:  {config.EMBEDDING_MODEL} ({config.EMBEDDING_DIMENSION} dims)")
    print(f"   Max chunk size:   {config.MAX_CHUNK_SIZE} chars")
    print(f"   Min content:      {config.MIN_CONTENT_LENGTH} chars")

    service = RAGService.from_config(db_path=args.db)

    try:
        await db.init_database(service.store.db_path)

        if args.note:
            result = await service.index_document(args.note, args.owner)
            if result.skipped:
                print(f"\nNote {args.note} has no text; nothing indexed.\n")
            else:
                print(f"\nNote {args.note}: {result.chunks_created} chunks created.\n")
            return 0

        progress = ProgressReporter(verbose=args.verbose)
        progress.start(f"Reindexing notes of {args.owner}")

        result = await service.reindex_all_for_owner(
            args.owner,
            progress_callback=progress.update if not args.verbose else None,
        )
        progress.finish(result.to_dict())

        stats = await service.index_stats(args.owner)
        if stats["stale_models"]:
            print(
                "Note: chunks from other embedding models are still stored: "
                f"{', '.join(stats['stale_models'])}\n"
            )

        return 1 if result.error_count > 0 else 0

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        return 1

    except RAGError as e:
        print(f"\nError: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        return 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
