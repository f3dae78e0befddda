"""ImageEntry repository.

Provides data access for ImageEntryRecord rows. Each row carries the full
ImageEntry document; callers work with ImageEntry values and never see rows.
"""

from typing import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from genledger.models.history import ImageEntry, ImageEntryRecord


class ImageEntryRepository:
    """Repository for ImageEntry documents keyed by image id."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_id(self, image_id: str) -> ImageEntry | None:
        """Retrieve entry by image id.

        Args:
            image_id: Source image UUID

        Returns:
            ImageEntry if found, None otherwise
        """
        record = await self.session.get(ImageEntryRecord, image_id)
        return record.to_entry() if record else None

    async def get_batch(self, image_ids: Iterable[str]) -> dict[str, ImageEntry]:
        """Retrieve many entries in a single query.

        Args:
            image_ids: Image ids to look up (duplicates ignored)

        Returns:
            Mapping of image id to entry for the ids that exist
        """
        ids = list(dict.fromkeys(image_ids))
        if not ids:
            return {}
        result = await self.session.execute(
            select(ImageEntryRecord).where(ImageEntryRecord.image_id.in_(ids))  # type: ignore[attr-defined]
        )
        return {record.image_id: record.to_entry() for record in result.scalars().all()}

    async def upsert(self, entry: ImageEntry) -> None:
        """Insert the entry or overwrite the stored document.

        Args:
            entry: Entry to persist
        """
        record = await self.session.get(ImageEntryRecord, entry.image_id)
        if record is None:
            self.session.add(ImageEntryRecord.from_entry(entry))
        else:
            record.apply(entry)
            self.session.add(record)
        await self.session.flush()

    async def upsert_many(self, entries: Iterable[ImageEntry]) -> int:
        """Insert or overwrite many entries, loading existing rows in one query.

        Args:
            entries: Entries to persist

        Returns:
            Number of entries written
        """
        by_id = {entry.image_id: entry for entry in entries}
        if not by_id:
            return 0
        result = await self.session.execute(
            select(ImageEntryRecord).where(ImageEntryRecord.image_id.in_(list(by_id)))  # type: ignore[attr-defined]
        )
        existing = {record.image_id: record for record in result.scalars().all()}
        for image_id, entry in by_id.items():
            record = existing.get(image_id)
            if record is None:
                self.session.add(ImageEntryRecord.from_entry(entry))
            else:
                record.apply(entry)
                self.session.add(record)
        await self.session.flush()
        return len(by_id)

    async def delete(self, image_id: str) -> bool:
        """Delete entry by image id.

        Returns:
            True if a row was deleted
        """
        result = await self.session.execute(
            delete(ImageEntryRecord).where(ImageEntryRecord.image_id == image_id)  # type: ignore[arg-type]
        )
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_by_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[ImageEntry]:
        """List an account's entries, most recently updated first.

        Args:
            account_id: Owning account UUID
            limit: Maximum number of entries
            offset: Number of entries to skip

        Returns:
            Entries ordered by updated_at DESC
        """
        result = await self.session.execute(
            select(ImageEntryRecord)
            .where(ImageEntryRecord.account_id == account_id)  # type: ignore[arg-type]
            .order_by(ImageEntryRecord.updated_at.desc())  # type: ignore[attr-defined]
            .offset(offset)
            .limit(limit)
        )
        return [record.to_entry() for record in result.scalars().all()]

    async def count_for_account(self, account_id: str) -> int:
        """Count entries owned by an account."""
        result = await self.session.execute(
            select(func.count())
            .select_from(ImageEntryRecord)
            .where(ImageEntryRecord.account_id == account_id)  # type: ignore[arg-type]
        )
        return result.scalar_one()

    async def list_ids_oldest_first(self, account_id: str | None = None) -> list[str]:
        """List image ids ordered by updated_at ASC (eviction order).

        Args:
            account_id: Restrict to one account (None for all entries)
        """
        query = select(ImageEntryRecord.image_id).order_by(
            ImageEntryRecord.updated_at.asc()  # type: ignore[attr-defined]
        )
        if account_id is not None:
            query = query.where(ImageEntryRecord.account_id == account_id)  # type: ignore[arg-type]
        result = await self.session.execute(query)
        return list(result.scalars().all())
