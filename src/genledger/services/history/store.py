"""Unified History Store: keyed persistence of ImageEntries.

The store holds no business logic. ``SqlHistoryStore`` persists through the
Unit of Work; ``MemoryHistoryStore`` keeps deep copies in a dict and counts
writes, which makes it the store of choice for tests and dry runs.
"""

from typing import Iterable, Protocol

import structlog
from sqlalchemy.exc import SQLAlchemyError

from genledger.models.history import ImageEntry
from genledger.services.exceptions import StorageError
from genledger.uow import UowFactory

logger = structlog.get_logger()


class HistoryStore(Protocol):
    """Persistence contract consumed by the tracking engine."""

    async def get_by_id(self, image_id: str) -> ImageEntry | None: ...

    async def get_batch(self, image_ids: Iterable[str]) -> dict[str, ImageEntry]: ...

    async def save_one(self, entry: ImageEntry) -> None: ...

    async def save_batch(self, entries: list[ImageEntry]) -> bool: ...

    async def delete(self, image_id: str) -> bool: ...

    async def list_by_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[ImageEntry]: ...

    async def list_ids_oldest_first(self, account_id: str | None = None) -> list[str]: ...


class SqlHistoryStore:
    """History store backed by the image_entries table.

    Every call runs in its own Unit of Work. Database errors are re-raised as
    StorageError so callers handle one exception type.
    """

    def __init__(self, uow_factory: UowFactory):
        self.uow_factory = uow_factory

    async def get_by_id(self, image_id: str) -> ImageEntry | None:
        try:
            async with await self.uow_factory() as uow:
                return await uow.image_entries.get_by_id(image_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load entry {image_id}: {e}") from e

    async def get_batch(self, image_ids: Iterable[str]) -> dict[str, ImageEntry]:
        try:
            async with await self.uow_factory() as uow:
                return await uow.image_entries.get_batch(image_ids)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load entry batch: {e}") from e

    async def save_one(self, entry: ImageEntry) -> None:
        try:
            async with await self.uow_factory() as uow:
                await uow.image_entries.upsert(entry)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to save entry {entry.image_id}: {e}") from e

    async def save_batch(self, entries: list[ImageEntry]) -> bool:
        """Persist all entries in one transaction.

        Returns:
            True on success, False if the transaction failed (nothing written)
        """
        if not entries:
            return True
        try:
            async with await self.uow_factory() as uow:
                await uow.image_entries.upsert_many(entries)
            return True
        except SQLAlchemyError as e:
            logger.error(
                "history_store.save_batch_failed",
                count=len(entries),
                error=str(e),
                error_type=type(e).__name__,
            )
            return False

    async def delete(self, image_id: str) -> bool:
        try:
            async with await self.uow_factory() as uow:
                return await uow.image_entries.delete(image_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to delete entry {image_id}: {e}") from e

    async def list_by_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[ImageEntry]:
        try:
            async with await self.uow_factory() as uow:
                return await uow.image_entries.list_by_account(account_id, limit, offset)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list entries for {account_id}: {e}") from e

    async def list_ids_oldest_first(self, account_id: str | None = None) -> list[str]:
        try:
            async with await self.uow_factory() as uow:
                return await uow.image_entries.list_ids_oldest_first(account_id)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list entry ids: {e}") from e


class MemoryHistoryStore:
    """In-process history store.

    Values are copied on the way in and out so callers cannot mutate stored
    state without saving it. ``write_count`` counts entries written.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ImageEntry] = {}
        self.write_count = 0
        self.batch_calls = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, image_id: object) -> bool:
        return image_id in self._entries

    async def get_by_id(self, image_id: str) -> ImageEntry | None:
        entry = self._entries.get(image_id)
        return entry.model_copy(deep=True) if entry else None

    async def get_batch(self, image_ids: Iterable[str]) -> dict[str, ImageEntry]:
        return {
            image_id: self._entries[image_id].model_copy(deep=True)
            for image_id in dict.fromkeys(image_ids)
            if image_id in self._entries
        }

    async def save_one(self, entry: ImageEntry) -> None:
        self._entries[entry.image_id] = entry.model_copy(deep=True)
        self.write_count += 1

    async def save_batch(self, entries: list[ImageEntry]) -> bool:
        if not entries:
            return True
        self.batch_calls += 1
        for entry in entries:
            self._entries[entry.image_id] = entry.model_copy(deep=True)
            self.write_count += 1
        return True

    async def delete(self, image_id: str) -> bool:
        return self._entries.pop(image_id, None) is not None

    async def list_by_account(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[ImageEntry]:
        owned = sorted(
            (e for e in self._entries.values() if e.account_id == account_id),
            key=lambda e: e.updated_at,
            reverse=True,
        )
        return [e.model_copy(deep=True) for e in owned[offset : offset + limit]]

    async def list_ids_oldest_first(self, account_id: str | None = None) -> list[str]:
        entries = [
            e for e in self._entries.values() if account_id is None or e.account_id == account_id
        ]
        return [e.image_id for e in sorted(entries, key=lambda e: e.updated_at)]
