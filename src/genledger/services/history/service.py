"""History service - attempt lifecycle operations over the Unified History Store.

Entries with an attempt in flight are kept in a working set so every stream
record for an attempt mutates the same in-memory value. Writes are
best-effort: a storage failure is logged and the in-memory state is kept, so a
later write (or a bulk merge pass) repairs the stored copy.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional

import structlog

from genledger.models.history import (
    Attempt,
    AttemptStatus,
    HistoryLimits,
    ImageEntry,
    ProgressEvent,
    utcnow,
)
from genledger.services.events import EventBus
from genledger.services.exceptions import StorageError
from genledger.services.history.store import HistoryStore

logger = structlog.get_logger()

# Attempt fields that stream handling may overwrite through update_attempt
UPDATABLE_ATTEMPT_FIELDS = frozenset(
    {
        "prompt",
        "video_url",
        "video_id",
        "video_prompt",
        "upscaled_video_url",
        "thumbnail_url",
        "final_message",
        "response_id",
        "model_name",
        "resolution",
        "mode",
    }
)


@dataclass
class FinalizeOutcome:
    """Result of a finalize call.

    ``finalized`` is False when the attempt had already reached a terminal
    state; nothing was changed or written in that case.
    """

    entry: ImageEntry
    attempt: Attempt
    finalized: bool


class HistoryService:
    """Creates, mutates and finalizes attempts and keeps entries within budget."""

    def __init__(
        self,
        store: HistoryStore,
        limits: Optional[HistoryLimits] = None,
        events: Optional[EventBus] = None,
    ):
        self.store = store
        self.limits = limits or HistoryLimits()
        self.events = events or EventBus()
        self._live: dict[str, ImageEntry] = {}

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    async def get_entry(self, image_id: str) -> ImageEntry | None:
        """Return the working copy if the entry is in flight, else the stored one."""
        live = self._live.get(image_id)
        if live is not None:
            return live
        try:
            return await self.store.get_by_id(image_id)
        except StorageError as e:
            logger.error("history.load_failed", image_id=image_id, error=str(e), exc_info=True)
            return None

    def working_entries(self, image_ids: Iterable[str]) -> dict[str, ImageEntry]:
        """In-flight entries among ``image_ids``.

        Other writers must mutate these objects rather than stored copies,
        otherwise the next save of the working copy discards their changes.
        """
        return {i: self._live[i] for i in image_ids if i in self._live}

    async def ensure_entry(
        self,
        image_id: str,
        account_id: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> ImageEntry:
        """Load or lazily create the entry for ``image_id`` and keep it in the working set.

        Account and thumbnail are backfilled only when the entry has none.
        """
        entry = await self.get_entry(image_id)
        created = entry is None
        if entry is None:
            entry = ImageEntry(
                image_id=image_id, account_id=account_id, thumbnail_url=thumbnail_url
            )

        changed = created
        if account_id and not entry.account_id:
            entry.account_id = account_id
            changed = True
        if thumbnail_url and not entry.thumbnail_url:
            entry.thumbnail_url = thumbnail_url
            changed = True

        self._live[image_id] = entry
        if changed:
            if not created:
                entry.updated_at = utcnow()
            await self._persist(entry)
            self.events.history_updated("image-created" if created else "image-updated", image_id)
        if created and entry.account_id:
            await self.enforce_history_cap(entry.account_id)
        return entry

    async def list_entries(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> list[ImageEntry]:
        try:
            return await self.store.list_by_account(account_id, limit, offset)
        except StorageError as e:
            logger.error("history.list_failed", account_id=account_id, error=str(e), exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------

    async def create_attempt(
        self,
        image_id: str,
        prompt: Optional[str] = None,
        payload_snapshot: Optional[str] = None,
        response_id: Optional[str] = None,
        account_id: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> Attempt:
        """Create a pending attempt as the newest attempt of the entry."""
        entry = await self.ensure_entry(image_id, account_id, thumbnail_url)
        attempt = entry.add_attempt(
            Attempt(prompt=prompt, payload_snapshot=payload_snapshot, response_id=response_id)
        )
        entry.enforce_limits(self.limits)
        await self._persist(entry)

        logger.info("attempt.created", image_id=image_id, attempt_id=attempt.id)
        self.events.history_updated("attempt-created", image_id, attempt_id=attempt.id)
        return attempt

    async def append_progress(
        self,
        image_id: str,
        attempt_id: str,
        progress: float,
        *,
        moderated: bool = False,
        moderation_reason: Optional[str] = None,
        video_url: Optional[str] = None,
        video_id: Optional[str] = None,
        video_prompt: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> ProgressEvent | None:
        """Record a progress sample on a live attempt.

        The entry is written only on significant samples: start (0), completion
        (>= 100), moderation, or an error.

        Returns:
            The recorded event, or None when the attempt is unknown, finalized,
            or the sample was dropped as a clean regression
        """
        found = self._find_live(image_id, attempt_id)
        if found is None:
            return None
        entry, attempt = found
        if attempt.is_finalized:
            return None

        event = attempt.record_progress(progress, moderated, timestamp, moderation_reason)
        if event is None:
            logger.debug(
                "attempt.progress_regression_ignored",
                image_id=image_id,
                attempt_id=attempt_id,
                progress=progress,
                last_clean_progress=attempt.last_clean_progress,
            )
            return None

        if video_url:
            attempt.video_url = video_url
        if video_id:
            attempt.video_id = video_id
        if video_prompt is not None:
            attempt.video_prompt = video_prompt
        if error:
            attempt.error = error

        entry.updated_at = utcnow()
        attempt.enforce_limits(self.limits)
        self.events.history_updated(
            "progress", image_id, attempt_id=attempt_id, progress=attempt.current_progress
        )

        if event.progress == 0 or event.progress >= 100 or event.moderated or error:
            await self._persist(entry)
        return event

    async def update_attempt(
        self, image_id: str, attempt_id: str, **fields: Any
    ) -> Attempt | None:
        """Overwrite selected fields of a live attempt and persist the entry."""
        unknown = set(fields) - UPDATABLE_ATTEMPT_FIELDS
        if unknown:
            raise ValueError(f"Attempt fields not updatable: {sorted(unknown)}")

        found = self._find_live(image_id, attempt_id)
        if found is None:
            return None
        entry, attempt = found

        for name, value in fields.items():
            setattr(attempt, name, value)
        entry.updated_at = utcnow()
        await self._persist(entry)
        self.events.history_updated("attempt-updated", image_id, attempt_id=attempt_id)
        return attempt

    async def finalize_attempt(
        self,
        image_id: str,
        attempt_id: str,
        *,
        status: Optional[AttemptStatus] = None,
        moderated: bool = False,
        moderation_reason: Optional[str] = None,
        error: Optional[str] = None,
        raw_stream: Optional[str] = None,
        video_url: Optional[str] = None,
        video_id: Optional[str] = None,
        video_prompt: Optional[str] = None,
        final_message: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> FinalizeOutcome | None:
        """Finalize an attempt exactly once.

        A second call for the same attempt returns ``finalized=False`` without
        changing or writing anything.

        Returns:
            FinalizeOutcome, or None if the entry or attempt is unknown
        """
        found = self._find_live(image_id, attempt_id)
        if found is None:
            entry = await self.get_entry(image_id)
            attempt = entry.get_attempt(attempt_id) if entry else None
            if entry is None or attempt is None:
                logger.warning("attempt.finalize_unknown", image_id=image_id, attempt_id=attempt_id)
                return None
        else:
            entry, attempt = found

        if attempt.is_finalized:
            return FinalizeOutcome(entry=entry, attempt=attempt, finalized=False)

        if raw_stream is not None:
            attempt.raw_stream = raw_stream
        if video_url:
            attempt.video_url = video_url
        if video_id:
            attempt.video_id = video_id
        if video_prompt is not None:
            attempt.video_prompt = video_prompt
        if final_message is not None:
            attempt.final_message = final_message
        if prompt:
            attempt.prompt = prompt

        attempt.finalize(
            status=status,
            moderated=moderated,
            moderation_reason=moderation_reason,
            error=error,
        )
        if attempt.status == AttemptStatus.MODERATED:
            entry.last_moderated_at = attempt.finished_at
        elif attempt.status == AttemptStatus.SUCCESS:
            entry.last_success_at = attempt.finished_at

        entry.recalculate_counters()
        entry.updated_at = attempt.finished_at or utcnow()
        entry.enforce_limits(self.limits)
        await self._persist(entry)

        if not any(not a.is_finalized for a in entry.attempts):
            self._live.pop(image_id, None)

        logger.info(
            "attempt.finalized",
            image_id=image_id,
            attempt_id=attempt_id,
            status=attempt.status.value,
            progress=attempt.current_progress,
        )
        self.events.history_updated(
            "attempt-finalized", image_id, attempt_id=attempt_id, status=attempt.status.value
        )
        return FinalizeOutcome(entry=entry, attempt=attempt, finalized=True)

    async def delete_attempt(self, image_id: str, attempt_id: str) -> bool:
        """Delete one attempt; the entry is removed when its last attempt goes.

        Returns:
            True if the attempt existed
        """
        entry = await self.get_entry(image_id)
        if entry is None or not entry.remove_attempt(attempt_id):
            return False

        if entry.attempts:
            await self._persist(entry)
            self.events.history_updated("attempt-deleted", image_id, attempt_id=attempt_id)
        else:
            self._live.pop(image_id, None)
            try:
                await self.store.delete(image_id)
            except StorageError as e:
                logger.error(
                    "history.delete_failed", image_id=image_id, error=str(e), exc_info=True
                )
            self.events.history_updated("image-removed", image_id)
        return True

    async def enforce_history_cap(self, account_id: str) -> list[str]:
        """Evict the account's oldest entries beyond ``max_images``.

        Entries with an attempt in flight are never evicted.

        Returns:
            Evicted image ids
        """
        try:
            ids = await self.store.list_ids_oldest_first(account_id)
        except StorageError as e:
            logger.error("history.cap_check_failed", account_id=account_id, error=str(e))
            return []

        overflow = len(ids) - self.limits.max_images
        evicted: list[str] = []
        for image_id in ids:
            if overflow <= 0:
                break
            live = self._live.get(image_id)
            if live is not None and any(not a.is_finalized for a in live.attempts):
                continue
            try:
                await self.store.delete(image_id)
            except StorageError as e:
                logger.error("history.evict_failed", image_id=image_id, error=str(e))
                continue
            self._live.pop(image_id, None)
            evicted.append(image_id)
            overflow -= 1

        if evicted:
            logger.warning("history.trimmed", account_id=account_id, evicted=len(evicted))
            for image_id in evicted:
                self.events.history_updated("image-removed", image_id)
        return evicted

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _find_live(self, image_id: str, attempt_id: str) -> tuple[ImageEntry, Attempt] | None:
        entry = self._live.get(image_id)
        if entry is None:
            return None
        attempt = entry.get_attempt(attempt_id)
        if attempt is None:
            return None
        return entry, attempt

    async def _persist(self, entry: ImageEntry) -> None:
        try:
            await self.store.save_one(entry)
        except StorageError as e:
            logger.error(
                "history.save_failed",
                image_id=entry.image_id,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
