"""Tests for HistoryService attempt lifecycle operations."""

from datetime import datetime, timedelta, timezone

import pytest

from genledger.models.history import AttemptStatus, HistoryLimits, ImageEntry
from genledger.services.events import HISTORY_UPDATED
from genledger.services.exceptions import StorageError
from genledger.services.history.service import HistoryService
from genledger.services.history.store import MemoryHistoryStore

ACCOUNT_ID = "0b5c1a4e-7f3d-4c2a-9e8b-1d2f3a4b5c6d"
IMAGE_ID = "a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d"


class FailingStore(MemoryHistoryStore):
    """Memory store whose single-entry writes fail."""

    async def save_one(self, entry):
        raise StorageError("disk full")


@pytest.fixture
def service(memory_store, events):
    return HistoryService(memory_store, events=events)


class TestEnsureEntry:
    @pytest.mark.asyncio
    async def test_creates_entry_once(self, service, memory_store):
        first = await service.ensure_entry(IMAGE_ID, ACCOUNT_ID, "https://t/1.jpg")
        second = await service.ensure_entry(IMAGE_ID, ACCOUNT_ID, "https://t/2.jpg")

        assert first is second
        assert memory_store.write_count == 1
        assert second.thumbnail_url == "https://t/1.jpg"

    @pytest.mark.asyncio
    async def test_backfills_missing_account(self, service, memory_store):
        await service.ensure_entry(IMAGE_ID)
        entry = await service.ensure_entry(IMAGE_ID, ACCOUNT_ID)

        assert entry.account_id == ACCOUNT_ID
        stored = await memory_store.get_by_id(IMAGE_ID)
        assert stored.account_id == ACCOUNT_ID


class TestAttemptLifecycle:
    @pytest.mark.asyncio
    async def test_create_attempt_is_newest_and_pending(self, service, events):
        older = await service.create_attempt(IMAGE_ID, prompt="one", account_id=ACCOUNT_ID)
        newer = await service.create_attempt(IMAGE_ID, prompt="two", account_id=ACCOUNT_ID)

        entry = await service.get_entry(IMAGE_ID)
        assert [a.id for a in entry.attempts] == [newer.id, older.id]
        assert newer.status == AttemptStatus.PENDING
        changes = [n.payload["type"] for n in events.published if n.name == HISTORY_UPDATED]
        assert changes[:2] == ["image-created", "attempt-created"]

    @pytest.mark.asyncio
    async def test_payload_snapshot_is_truncated(self, memory_store):
        service = HistoryService(memory_store, limits=HistoryLimits(max_payload_chars=10))

        attempt = await service.create_attempt(IMAGE_ID, payload_snapshot="a" * 45 + "0123456789")

        assert attempt.payload_snapshot == "0123456789"

    @pytest.mark.asyncio
    async def test_only_significant_progress_is_written(self, service, memory_store):
        attempt = await service.create_attempt(IMAGE_ID, account_id=ACCOUNT_ID)
        writes_before = memory_store.write_count

        await service.append_progress(IMAGE_ID, attempt.id, 10)
        await service.append_progress(IMAGE_ID, attempt.id, 50)
        assert memory_store.write_count == writes_before

        await service.append_progress(IMAGE_ID, attempt.id, 100)
        assert memory_store.write_count == writes_before + 1

    @pytest.mark.asyncio
    async def test_progress_regression_is_dropped(self, service):
        attempt = await service.create_attempt(IMAGE_ID)
        await service.append_progress(IMAGE_ID, attempt.id, 60)

        assert await service.append_progress(IMAGE_ID, attempt.id, 20) is None
        entry = await service.get_entry(IMAGE_ID)
        assert entry.get_attempt(attempt.id).current_progress == 60

    @pytest.mark.asyncio
    async def test_update_attempt_rejects_unknown_fields(self, service):
        attempt = await service.create_attempt(IMAGE_ID)

        with pytest.raises(ValueError):
            await service.update_attempt(IMAGE_ID, attempt.id, status="success")

    @pytest.mark.asyncio
    async def test_finalize_happens_once(self, service, memory_store):
        """A second finalize changes nothing and writes nothing."""
        attempt = await service.create_attempt(IMAGE_ID, account_id=ACCOUNT_ID)
        await service.append_progress(IMAGE_ID, attempt.id, 100, video_url="https://v/1.mp4")

        first = await service.finalize_attempt(IMAGE_ID, attempt.id)
        writes_after_first = memory_store.write_count
        second = await service.finalize_attempt(
            IMAGE_ID, attempt.id, status=AttemptStatus.FAILED, error="late"
        )

        assert first.finalized is True
        assert first.attempt.status == AttemptStatus.SUCCESS
        assert first.entry.success_count == 1
        assert first.entry.last_success_at == first.attempt.finished_at
        assert second.finalized is False
        assert second.attempt.status == AttemptStatus.SUCCESS
        assert memory_store.write_count == writes_after_first

    @pytest.mark.asyncio
    async def test_finalize_moderated_updates_entry(self, service):
        attempt = await service.create_attempt(IMAGE_ID)
        await service.append_progress(IMAGE_ID, attempt.id, 40)
        await service.append_progress(IMAGE_ID, attempt.id, 5, moderated=True)

        outcome = await service.finalize_attempt(IMAGE_ID, attempt.id, moderated=True)

        assert outcome.attempt.status == AttemptStatus.MODERATED
        assert outcome.attempt.moderated_at_progress == 40
        assert outcome.entry.fail_count == 1
        assert outcome.entry.last_moderated_at is not None

    @pytest.mark.asyncio
    async def test_finalize_unknown_attempt_returns_none(self, service):
        assert await service.finalize_attempt(IMAGE_ID, "attempt_missing") is None

    @pytest.mark.asyncio
    async def test_storage_failure_keeps_in_memory_state(self, events):
        service = HistoryService(FailingStore(), events=events)

        attempt = await service.create_attempt(IMAGE_ID)
        await service.append_progress(IMAGE_ID, attempt.id, 100)
        outcome = await service.finalize_attempt(IMAGE_ID, attempt.id)

        assert outcome.finalized is True
        assert outcome.attempt.status == AttemptStatus.SUCCESS


class TestDeletion:
    @pytest.mark.asyncio
    async def test_deleting_last_attempt_removes_entry(self, service, memory_store, events):
        attempt = await service.create_attempt(IMAGE_ID, account_id=ACCOUNT_ID)
        await service.finalize_attempt(IMAGE_ID, attempt.id, status=AttemptStatus.FAILED)

        assert await service.delete_attempt(IMAGE_ID, attempt.id) is True

        assert IMAGE_ID not in memory_store
        assert await service.get_entry(IMAGE_ID) is None
        assert events.published[-1].payload["type"] == "image-removed"

    @pytest.mark.asyncio
    async def test_deleting_one_of_many_keeps_entry(self, service, memory_store):
        first = await service.create_attempt(IMAGE_ID)
        await service.create_attempt(IMAGE_ID)

        assert await service.delete_attempt(IMAGE_ID, first.id) is True

        stored = await memory_store.get_by_id(IMAGE_ID)
        assert len(stored.attempts) == 1

    @pytest.mark.asyncio
    async def test_deleting_unknown_attempt(self, service):
        assert await service.delete_attempt(IMAGE_ID, "attempt_missing") is False


class TestHistoryCap:
    @pytest.mark.asyncio
    async def test_evicts_oldest_entries_of_the_account(self, memory_store, events):
        # Arrange: four entries for the account, one for another account
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for index in range(4):
            await memory_store.save_one(
                ImageEntry(
                    image_id=f"image-{index}",
                    account_id=ACCOUNT_ID,
                    updated_at=base + timedelta(minutes=index),
                )
            )
        await memory_store.save_one(
            ImageEntry(image_id="foreign", account_id="other", updated_at=base)
        )
        service = HistoryService(memory_store, limits=HistoryLimits(max_images=2), events=events)

        # Act
        evicted = await service.enforce_history_cap(ACCOUNT_ID)

        # Assert
        assert evicted == ["image-0", "image-1"]
        assert "image-2" in memory_store and "image-3" in memory_store
        assert "foreign" in memory_store

    @pytest.mark.asyncio
    async def test_in_flight_entries_are_not_evicted(self, memory_store):
        service = HistoryService(memory_store, limits=HistoryLimits(max_images=1))
        await service.create_attempt("image-old", account_id=ACCOUNT_ID)

        # Creating a second entry trips the cap, but the older one is in flight
        await service.ensure_entry("image-new", ACCOUNT_ID)

        assert "image-old" in memory_store
