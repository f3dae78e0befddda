"""Repository and history store tests.

Tests focus on the logic the engine depends on:
- Documents round-trip with attempts and timezone-aware timestamps
- Upserts overwrite instead of duplicating
- Per-account listing and eviction ordering
- SqlHistoryStore maps database errors to StorageError

Simple CRUD operations are not tested (trust SQLAlchemy).
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from genledger.models.history import Attempt, AttemptStatus, ImageEntry
from genledger.repositories.image_entry import ImageEntryRepository
from genledger.services.exceptions import StorageError
from genledger.services.history.store import SqlHistoryStore

ACCOUNT_ID = "0b5c1a4e-7f3d-4c2a-9e8b-1d2f3a4b5c6d"
BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_entry(image_id: str, minutes: int = 0, account_id: str = ACCOUNT_ID) -> ImageEntry:
    return ImageEntry(
        image_id=image_id,
        account_id=account_id,
        updated_at=BASE_TIME + timedelta(minutes=minutes),
    )


@pytest.mark.asyncio
async def test_document_round_trip(session):
    """Attempts, statuses and aware datetimes survive the JSON document column."""
    repo = ImageEntryRepository(session)
    entry = make_entry("image-1")
    attempt = Attempt(prompt="wave", started_at=BASE_TIME)
    attempt.record_progress(100, timestamp=BASE_TIME)
    attempt.finalize(finished_at=BASE_TIME)
    entry.add_attempt(attempt)
    entry.updated_at = BASE_TIME

    await repo.upsert(entry)
    await session.commit()

    found = await repo.get_by_id("image-1")
    assert found.attempts[0].status == AttemptStatus.SUCCESS
    assert found.attempts[0].finished_at == BASE_TIME
    assert found.attempts[0].progress_events[0].progress == 100
    assert found.updated_at.tzinfo is not None


@pytest.mark.asyncio
async def test_upsert_overwrites_existing_document(session):
    repo = ImageEntryRepository(session)
    await repo.upsert(make_entry("image-1"))

    updated = make_entry("image-1", minutes=5)
    updated.image_prompt = "a lighthouse"
    updated.completeness_lock = True
    await repo.upsert(updated)
    await session.commit()

    found = await repo.get_by_id("image-1")
    assert found.image_prompt == "a lighthouse"
    assert found.completeness_lock is True
    assert await repo.count_for_account(ACCOUNT_ID) == 1


@pytest.mark.asyncio
async def test_upsert_many_mixes_inserts_and_updates(session):
    repo = ImageEntryRepository(session)
    await repo.upsert(make_entry("image-1"))

    changed = make_entry("image-1")
    changed.thumbnail_url = "https://cdn.test/1.jpg"
    written = await repo.upsert_many([changed, make_entry("image-2")])
    await session.commit()

    found = await repo.get_batch(["image-1", "image-2", "image-missing", "image-1"])
    assert written == 2
    assert set(found) == {"image-1", "image-2"}
    assert found["image-1"].thumbnail_url == "https://cdn.test/1.jpg"


@pytest.mark.asyncio
async def test_list_by_account_orders_newest_first(session):
    repo = ImageEntryRepository(session)
    await repo.upsert_many(
        [
            make_entry("old", minutes=0),
            make_entry("new", minutes=10),
            make_entry("middle", minutes=5),
            make_entry("foreign", minutes=20, account_id="other"),
        ]
    )
    await session.commit()

    page = await repo.list_by_account(ACCOUNT_ID, limit=2)
    rest = await repo.list_by_account(ACCOUNT_ID, limit=2, offset=2)

    assert [e.image_id for e in page] == ["new", "middle"]
    assert [e.image_id for e in rest] == ["old"]
    assert await repo.list_ids_oldest_first(ACCOUNT_ID) == ["old", "middle", "new"]
    assert (await repo.list_ids_oldest_first())[-1] == "foreign"


@pytest.mark.asyncio
async def test_delete_reports_missing_rows(session):
    repo = ImageEntryRepository(session)
    await repo.upsert(make_entry("image-1"))

    assert await repo.delete("image-1") is True
    assert await repo.delete("image-1") is False


class TestSqlHistoryStore:
    @pytest.mark.asyncio
    async def test_save_batch_is_visible_to_later_reads(self, uow_factory):
        store = SqlHistoryStore(uow_factory)

        assert await store.save_batch([make_entry("image-1"), make_entry("image-2")]) is True

        assert (await store.get_by_id("image-2")).account_id == ACCOUNT_ID
        assert await store.list_ids_oldest_first(ACCOUNT_ID) == ["image-1", "image-2"]

    @pytest.mark.asyncio
    async def test_database_errors_become_storage_errors(self):
        async def broken_uow_factory():
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        store = SqlHistoryStore(broken_uow_factory)

        with pytest.raises(StorageError):
            await store.get_by_id("image-1")
        assert await store.save_batch([make_entry("image-1")]) is False
