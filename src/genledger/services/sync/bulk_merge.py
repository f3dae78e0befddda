"""Bulk Merge Engine: reconcile a remote listing into the history store.

One pass:

    1. collect target image ids (image posts: own id, video posts: parent id)
    2. batch-fetch the existing entries in one store call, preferring the
       in-memory copies of entries the history service is still updating
    3. find-or-create each entry and backfill only empty fields
       (skipped entirely once the entry is locked)
    4. find-or-create one success Attempt per video record
    5. advance ``updated_at`` / ``last_success_at`` to the latest video time
    6. write every changed entry in one ``save_batch`` call

Passes are strictly additive and idempotent: running the same listing twice
writes nothing the second time. Only one pass runs at a time; overlapping
calls are dropped, not queued.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

import structlog

from genledger.core.locking import LockAlreadyHeldError, SingleFlightLock
from genledger.models.history import Attempt, AttemptStatus, HistoryLimits, ImageEntry, utcnow
from genledger.services.correlation.context import AccountContext
from genledger.services.correlation.extractors import strip_query
from genledger.services.events import HISTORY_UPDATED, EventBus
from genledger.services.exceptions import StorageError
from genledger.services.history.store import HistoryStore
from genledger.services.sync.listing import ListingPost, parse_listing

logger = structlog.get_logger()

WorkingSet = Callable[[Iterable[str]], dict[str, ImageEntry]]

# Skip reasons
SKIP_IN_FLIGHT = "in_flight"
SKIP_EMPTY = "empty"
SKIP_NO_ACCOUNT = "no_account"
SKIP_STORAGE = "storage_error"


@dataclass
class MergeResult:
    """Outcome of one bulk merge pass."""

    skipped: bool = False
    skip_reason: Optional[str] = None
    account_id: Optional[str] = None
    processed: int = 0
    ignored: int = 0
    created_entries: int = 0
    created_attempts: int = 0
    saved: bool = True
    entries: list[ImageEntry] = field(default_factory=list)

    @property
    def written(self) -> int:
        return len(self.entries) if self.saved else 0


class BulkMergeEngine:
    """Idempotent, lock-respecting listing ingestion."""

    def __init__(
        self,
        store: HistoryStore,
        limits: Optional[HistoryLimits] = None,
        events: Optional[EventBus] = None,
        lock: Optional[SingleFlightLock] = None,
        working_set: Optional[WorkingSet] = None,
    ):
        """
        Args:
            working_set: Returns the in-memory entries another writer holds for
                the given ids. Those objects are merged in place instead of the
                stored copies, so the other writer's next save keeps the merge.
        """
        self.store = store
        self.limits = limits or HistoryLimits()
        self.events = events or EventBus()
        self.lock = lock or SingleFlightLock("bulk-merge")
        self.working_set = working_set

    async def ingest(
        self,
        posts: list[Any],
        accounts: Optional[AccountContext] = None,
        account_id: Optional[str] = None,
    ) -> MergeResult:
        """Merge listing records into the store.

        Args:
            posts: Raw listing records (dicts) or parsed ListingPost objects
            accounts: Account context; supplies the active account and learns
                the listing's account when none is active
            account_id: Explicit owner, overriding the account context

        Returns:
            MergeResult (``skipped=True`` when the pass did not run)
        """
        # Taken before the first await so overlapping passes cannot interleave
        try:
            self.lock.acquire("bulk-merge")
        except LockAlreadyHeldError as e:
            logger.debug("bulk_merge.skipped_in_flight", holder=e.holder, count=len(posts))
            return MergeResult(skipped=True, skip_reason=SKIP_IN_FLIGHT)

        try:
            return await self._ingest(posts, accounts, account_id)
        finally:
            self.lock.release()

    async def _ingest(
        self,
        posts: list[Any],
        accounts: Optional[AccountContext],
        account_id: Optional[str],
    ) -> MergeResult:
        records = self._parse(posts)
        if not records:
            logger.debug("bulk_merge.empty")
            return MergeResult(skipped=True, skip_reason=SKIP_EMPTY)

        account_id = account_id or (accounts.active_account_id if accounts else None)
        if not account_id:
            account_id = next((r.user_id for r in records if r.user_id), None)
            if account_id and accounts is not None:
                accounts.set_active(account_id, source="listing")
        if not account_id:
            logger.warning("bulk_merge.no_account", count=len(records))
            return MergeResult(skipped=True, skip_reason=SKIP_NO_ACCOUNT)

        log = logger.bind(account_id=account_id)
        result = MergeResult(account_id=account_id)

        image_ids = [r.target_image_id for r in records if r.target_image_id]
        try:
            entries = await self.store.get_batch(image_ids)
        except StorageError as e:
            log.error("bulk_merge.fetch_failed", error=str(e), exc_info=True)
            return MergeResult(skipped=True, skip_reason=SKIP_STORAGE, account_id=account_id)
        live = self.working_set(image_ids) if self.working_set is not None else {}
        entries.update(live)
        log.debug(
            "bulk_merge.fetched", requested=len(image_ids), found=len(entries), live=len(live)
        )

        dirty: dict[str, ImageEntry] = {}
        for record in records:
            image_id = record.target_image_id
            if not image_id:
                result.ignored += 1
                continue

            try:
                entry = entries.get(image_id)
                if entry is None:
                    entry = self._new_entry(image_id, account_id, record)
                    entries[image_id] = entry
                    dirty[image_id] = entry
                    result.created_entries += 1

                changed = False
                if not entry.completeness_lock:
                    changed = self._backfill_entry(entry, record)
                added = self._merge_videos(entry, record)
                result.created_attempts += added
                updated = self._merge_video_updates(entry, record, in_flight=image_id in live)
                changed = updated or changed or added > 0
                changed = self._advance_times(entry, record) or changed

                if changed:
                    dirty[image_id] = entry
                result.processed += 1
            except Exception as e:
                log.error(
                    "bulk_merge.record_failed",
                    image_id=image_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        for entry in dirty.values():
            entry.recalculate_counters()
            entry.enforce_limits(self.limits)

        result.entries = list(dirty.values())
        if result.entries:
            result.saved = await self.store.save_batch(result.entries)
            if result.saved:
                self.events.publish(
                    HISTORY_UPDATED,
                    type="bulk-merge",
                    account_id=account_id,
                    image_ids=[e.image_id for e in result.entries],
                )

        log.info(
            "bulk_merge.completed",
            records=len(records),
            processed=result.processed,
            created_entries=result.created_entries,
            created_attempts=result.created_attempts,
            written=result.written,
            saved=result.saved,
        )
        return result

    @staticmethod
    def _parse(posts: list[Any]) -> list[ListingPost]:
        return parse_listing(posts or [])

    @staticmethod
    def _new_entry(image_id: str, account_id: str, record: ListingPost) -> ImageEntry:
        created = (record.create_time if record.is_image else None) or utcnow()
        return ImageEntry(
            image_id=image_id, account_id=account_id, created_at=created, updated_at=created
        )

    @staticmethod
    def _backfill_entry(entry: ImageEntry, record: ListingPost) -> bool:
        """Fill empty entry fields from the record and lock the entry once complete."""
        if record.is_image:
            values = {
                "thumbnail_url": record.clean_media_url,
                "image_url": record.clean_media_url,
                "image_prompt": record.best_prompt,
                "image_create_time": record.create_time,
                "image_resolution": record.resolution,
                "image_model_name": record.model_name,
            }
        else:
            values = {"thumbnail_url": strip_query(record.thumbnail_image_url)}

        changed = False
        for name, value in values.items():
            if value and not getattr(entry, name):
                setattr(entry, name, value)
                changed = True

        if entry.thumbnail_url and entry.image_prompt and not entry.completeness_lock:
            entry.completeness_lock = True
            changed = True
            logger.debug("bulk_merge.entry_locked", image_id=entry.image_id)
        return changed

    def _merge_videos(self, entry: ImageEntry, record: ListingPost) -> int:
        """Create success attempts for videos not yet in the entry."""
        added = 0
        for video in record.video_records():
            if not video.id or entry.find_attempt_by_video(video.id):
                continue
            entry.attempts.append(self._new_attempt(entry, video))
            added += 1
        if added:
            # Keep newest first
            entry.attempts.sort(key=lambda a: a.started_at, reverse=True)
        return added

    def _merge_video_updates(
        self, entry: ImageEntry, record: ListingPost, in_flight: bool = False
    ) -> bool:
        changed = False
        for video in record.video_records():
            if not video.id:
                continue
            attempt = entry.find_attempt_by_video(video.id)
            if attempt is None:
                continue
            if entry.completeness_lock and not self._can_fill(attempt, video):
                continue
            if self._backfill_attempt(entry, attempt, video, finalize=not in_flight):
                changed = True
        return changed

    @staticmethod
    def _video_thumbnail(entry: ImageEntry, video: ListingPost) -> Optional[str]:
        return strip_query(
            video.thumbnail_image_url or entry.thumbnail_url or entry.image_url or video.media_url
        )

    def _new_attempt(self, entry: ImageEntry, video: ListingPost) -> Attempt:
        created = video.create_time or utcnow()
        prompt = video.best_video_prompt
        return Attempt(
            id=video.id,
            video_id=video.id,
            video_url=video.clean_media_url,
            thumbnail_url=self._video_thumbnail(entry, video),
            prompt=prompt,
            video_prompt=prompt,
            mode=video.mode,
            model_name=video.model_name,
            resolution=video.resolution,
            status=AttemptStatus.SUCCESS,
            current_progress=100,
            last_clean_progress=100,
            started_at=created,
            finished_at=created,
            is_api_source=True,
            parent_image_id=video.original_post_id or entry.image_id,
            audio_urls=list(video.audio_urls or []),
        )

    @staticmethod
    def _can_fill(attempt: Attempt, video: ListingPost) -> bool:
        """Whether a locked entry's attempt is missing data this record has."""
        return bool(
            (not attempt.video_url and video.media_url)
            or (not attempt.thumbnail_url and video.thumbnail_image_url)
            or (not attempt.video_prompt and video.best_video_prompt)
        )

    def _backfill_attempt(
        self, entry: ImageEntry, attempt: Attempt, video: ListingPost, finalize: bool = True
    ) -> bool:
        """Fill only the attempt fields that are still empty.

        A thumbnail that merely repeats the video URL is replaced too, but only
        while the entry is unlocked. Pending attempts are completed unless their
        stream is still being processed (``finalize=False``).
        """
        thumbnail = self._video_thumbnail(entry, video)
        values = {
            "video_id": video.id,
            "video_url": video.clean_media_url,
            "video_prompt": video.best_video_prompt,
            "prompt": video.best_video_prompt,
            "model_name": video.model_name,
            "resolution": video.resolution,
            "mode": video.mode,
            "parent_image_id": video.original_post_id,
        }
        changed = False
        for name, value in values.items():
            if value and not getattr(attempt, name):
                setattr(attempt, name, value)
                changed = True

        placeholder = (
            not entry.completeness_lock and attempt.thumbnail_url == attempt.video_url
        )
        if thumbnail and (not attempt.thumbnail_url or placeholder):
            if attempt.thumbnail_url != thumbnail:
                attempt.thumbnail_url = thumbnail
                changed = True

        if not attempt.audio_urls and video.audio_urls:
            attempt.audio_urls = list(video.audio_urls)
            changed = True

        # A stream that never reported completion but whose video exists
        if finalize and not attempt.is_finalized and video.media_url:
            finished = video.create_time or utcnow()
            attempt.record_progress(100, timestamp=finished)
            attempt.finalize(status=AttemptStatus.SUCCESS, finished_at=finished)
            changed = True

        return changed

    @staticmethod
    def _advance_times(entry: ImageEntry, record: ListingPost) -> bool:
        times = [v.create_time for v in record.video_records() if v.create_time]
        latest = max(times, default=None)
        if latest is None:
            return False
        changed = False
        if latest > entry.updated_at:
            entry.updated_at = latest
            changed = True
        if entry.last_success_at is None or latest > entry.last_success_at:
            entry.last_success_at = latest
            changed = True
        return changed
