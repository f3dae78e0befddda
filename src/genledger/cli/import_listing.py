"""CLI command for re-ingesting a saved listing into the history store.

Repairs entries whose attempts are missing video URLs, thumbnails or prompts by
running a saved listing response through the Bulk Merge Engine.

Usage:
    python -m genledger.cli.import_listing FILE [OPTIONS]

Examples:
    # Import a listing saved from the browser
    python -m genledger.cli.import_listing listing.json

    # Attribute the records to an explicit account
    python -m genledger.cli.import_listing listing.json --account-id <uuid>

    # Dry run (no database writes)
    python -m genledger.cli.import_listing listing.json --dry-run
"""

import asyncio
import json
import sys
from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Any, Iterable, Optional

import structlog

from genledger.core.config import Settings, configure_logging
from genledger.core.database import create_tables, setup_db_session
from genledger.models.history import ImageEntry
from genledger.services.history.store import HistoryStore, SqlHistoryStore
from genledger.services.sync.bulk_merge import BulkMergeEngine
from genledger.uow import create_uow_factory

logger = structlog.get_logger()


class DryRunHistoryStore:
    """Reads through to a real store and discards every write."""

    def __init__(self, store: HistoryStore):
        self.store = store
        self.discarded: list[str] = []

    async def get_by_id(self, image_id: str) -> ImageEntry | None:
        return await self.store.get_by_id(image_id)

    async def get_batch(self, image_ids: Iterable[str]) -> dict[str, ImageEntry]:
        return await self.store.get_batch(image_ids)

    async def save_one(self, entry: ImageEntry) -> None:
        self.discarded.append(entry.image_id)

    async def save_batch(self, entries: list[ImageEntry]) -> bool:
        self.discarded.extend(e.image_id for e in entries)
        return True

    async def delete(self, image_id: str) -> bool:
        return False

    async def list_by_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[ImageEntry]:
        return await self.store.list_by_account(account_id, limit, offset)

    async def list_ids_oldest_first(self, account_id: str | None = None) -> list[str]:
        return await self.store.list_ids_oldest_first(account_id)


def load_listing(path: Path) -> list[Any]:
    """Read listing records from a saved API response.

    Accepts a bare JSON array or an object with a ``posts`` array.

    Raises:
        ValueError: If the file holds neither shape
    """
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("posts")
    if not isinstance(data, list):
        raise ValueError(
            f"{path} does not contain a listing (expected a list or {{'posts': [...]}})"
        )
    return data


def parse_args(argv: Optional[list[str]] = None) -> Namespace:
    """Parse command-line arguments."""
    parser = ArgumentParser(
        description="Re-ingest a saved listing through the bulk merge engine",
        epilog="Only empty fields are filled; locked entries only gain missing video data",
    )

    parser.add_argument("file", type=Path, help="Saved listing JSON file")

    parser.add_argument(
        "--account-id",
        help="Owner account of the listing (default: userId found in the records)",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without database writes",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging (DEBUG level)",
    )

    return parser.parse_args(argv)


async def async_main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point (async).

    Returns:
        Exit code: 0 (success), 1 (error), 2 (nothing ingested)
    """
    args = parse_args(argv)

    settings = Settings()  # type: ignore[call-arg]
    if args.verbose:
        settings.log_level = "DEBUG"
    configure_logging(settings)

    logger.info("cli.started", file=str(args.file), dry_run=args.dry_run)

    try:
        posts = load_listing(args.file)
    except (OSError, ValueError) as e:
        logger.error("cli.listing_unreadable", file=str(args.file), error=str(e))
        print(f"Error: {e}", file=sys.stderr)
        return 1

    session_factory = setup_db_session(settings.database_url, settings.db_pool_size)
    engine = session_factory.kw["bind"]
    store: HistoryStore = SqlHistoryStore(create_uow_factory(session_factory))
    if args.dry_run:
        store = DryRunHistoryStore(store)

    merge_engine = BulkMergeEngine(store, settings.history_limits)

    try:
        if settings.database_url.startswith("sqlite"):
            await create_tables(engine)
        result = await merge_engine.ingest(posts, account_id=args.account_id)

        print("\n" + "=" * 60)
        print("Listing Import Summary")
        print("=" * 60)
        print(f"Records in file: {len(posts)}")
        if result.skipped:
            print(f"Skipped: {result.skip_reason}")
        else:
            print(f"Account: {result.account_id}")
            print(f"Records processed: {result.processed}")
            print(f"Records ignored (not image/video): {result.ignored}")
            print(f"Entries created: {result.created_entries}")
            print(f"Attempts created: {result.created_attempts}")
            print(f"Entries written: {result.written}")

        if args.dry_run:
            print("\n[DRY RUN] No changes were persisted to database")

        print("=" * 60 + "\n")

        if result.skipped:
            logger.warning("cli.nothing_ingested", reason=result.skip_reason)
            return 2
        if not result.saved:
            logger.error("cli.save_failed")
            return 1
        logger.info("cli.success", written=result.written)
        return 0

    except KeyboardInterrupt:
        logger.info("cli.interrupted")
        print("\nImport interrupted by user", file=sys.stderr)
        return 130

    except Exception as e:
        logger.error(
            "cli.unexpected_error",
            error=str(e),
            error_type=type(e).__name__,
        )
        print(f"\nUnexpected error: {e}", file=sys.stderr)
        return 1

    finally:
        await engine.dispose()


def main() -> None:
    """Synchronous entry point for CLI."""
    sys.exit(asyncio.run(async_main()))


if __name__ == "__main__":
    main()
