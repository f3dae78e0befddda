"""Generation history entities - ImageEntry aggregates holding ordered Attempts."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import field_validator
from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes so all history timestamps compare safely."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def keep_tail(text: Optional[str], max_chars: int) -> Optional[str]:
    """Trim the oldest (leading) characters so at most ``max_chars`` remain."""
    if text is None or len(text) <= max_chars:
        return text
    return text[len(text) - max_chars :] if max_chars > 0 else ""


@dataclass(frozen=True)
class HistoryLimits:
    """Retention budgets applied to every ImageEntry."""

    max_images: int = 5000
    max_attempts_per_image: int = 50
    max_progress_events: int = 100
    max_stream_chars: int = 100_000
    max_payload_chars: int = 50_000


class AttemptStatus(str, Enum):
    """Attempt lifecycle status."""

    PENDING = "pending"
    SUCCESS = "success"
    MODERATED = "moderated"
    FAILED = "failed"


class ProgressEvent(SQLModel):
    """Single progress sample recorded for an attempt."""

    progress: float = 0
    moderated: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp", mode="after")
    @classmethod
    def _utc_timestamp(cls, v: datetime) -> datetime:
        return ensure_utc(v)  # type: ignore[return-value]


class Attempt(SQLModel):
    """One try at generating a video for a source image.

    Created pending by request correlation, mutated by the stream processor,
    finalized exactly once. Bulk listing ingestion creates attempts directly in
    the success state.
    """

    id: str = Field(default_factory=lambda: f"attempt_{uuid4()}")
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    prompt: Optional[str] = None
    status: AttemptStatus = AttemptStatus.PENDING
    moderated: bool = False
    moderation_reason: Optional[str] = None
    progress_events: list[ProgressEvent] = Field(default_factory=list)
    current_progress: float = 0
    last_clean_progress: Optional[float] = None
    moderated_at_progress: Optional[float] = None

    # Video output
    video_id: Optional[str] = None
    video_url: Optional[str] = None
    upscaled_video_url: Optional[str] = None
    video_prompt: Optional[str] = None
    thumbnail_url: Optional[str] = None
    final_message: Optional[str] = None

    # Request/stream capture
    response_id: Optional[str] = None
    raw_stream: Optional[str] = None
    payload_snapshot: Optional[str] = None
    error: Optional[str] = None

    # Listing metadata (bulk ingestion)
    model_name: Optional[str] = None
    resolution: Optional[Any] = None
    mode: Optional[str] = None
    audio_urls: list[str] = Field(default_factory=list)
    parent_image_id: Optional[str] = None
    is_api_source: bool = False

    @field_validator("started_at", "finished_at", mode="after")
    @classmethod
    def _utc_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_finalized(self) -> bool:
        return self.finished_at is not None

    def record_progress(
        self,
        progress: float,
        moderated: bool = False,
        timestamp: Optional[datetime] = None,
        moderation_reason: Optional[str] = None,
    ) -> Optional[ProgressEvent]:
        """Append a progress sample.

        Clean samples never move progress backwards: a non-moderated value below
        the last clean value is dropped. The first moderated sample freezes
        ``moderated_at_progress`` at the last clean value (falling back to the
        sample's own value), since moderation records may report stale or zero
        progress.

        Args:
            progress: Progress value, clamped to 0-100
            moderated: Whether the sample carries a moderation flag
            timestamp: Sample time (defaults to now)
            moderation_reason: Reason reported alongside a moderated sample

        Returns:
            The recorded event, or None if the sample was dropped
        """
        value = max(0.0, min(100.0, float(progress)))
        if (
            not moderated
            and self.last_clean_progress is not None
            and value < self.last_clean_progress
        ):
            return None

        event = ProgressEvent(progress=value, moderated=moderated, timestamp=timestamp or utcnow())
        self.progress_events.append(event)
        self.current_progress = value

        if moderated:
            self.moderated = True
            if self.moderated_at_progress is None:
                self.moderated_at_progress = (
                    self.last_clean_progress if self.last_clean_progress is not None else value
                )
            self.current_progress = self.moderated_at_progress
            self.moderation_reason = moderation_reason or self.moderation_reason
        else:
            self.last_clean_progress = value

        return event

    def finalize(
        self,
        status: Optional[AttemptStatus] = None,
        moderated: bool = False,
        moderation_reason: Optional[str] = None,
        error: Optional[str] = None,
        finished_at: Optional[datetime] = None,
    ) -> bool:
        """Move the attempt to its terminal status.

        Moderation wins over any requested status. Otherwise an explicit failed
        status fails the attempt, an explicit success (or a last sample of 100)
        succeeds, and anything else fails.

        Returns:
            True if the attempt was finalized, False if it already was (no-op)
        """
        if self.is_finalized:
            return False

        self.finished_at = finished_at or utcnow()
        if error:
            self.error = error

        last_progress = (
            self.progress_events[-1].progress if self.progress_events else self.current_progress
        )

        if moderated or self.moderated:
            self.moderated = True
            if moderation_reason:
                self.moderation_reason = moderation_reason
            if self.moderated_at_progress is None:
                self.moderated_at_progress = (
                    self.last_clean_progress
                    if self.last_clean_progress is not None
                    else last_progress
                )
            self.current_progress = self.moderated_at_progress
            self.status = AttemptStatus.MODERATED
        elif status == AttemptStatus.FAILED:
            self.status = AttemptStatus.FAILED
        elif status == AttemptStatus.SUCCESS or last_progress == 100:
            self.status = AttemptStatus.SUCCESS
        else:
            self.status = AttemptStatus.FAILED

        return True

    def enforce_limits(self, limits: HistoryLimits) -> bool:
        """Trim progress events and captured text to the retention budgets.

        Returns:
            True if anything was trimmed
        """
        mutated = False
        overflow = len(self.progress_events) - limits.max_progress_events
        if overflow > 0:
            del self.progress_events[:overflow]
            mutated = True
        raw_stream = keep_tail(self.raw_stream, limits.max_stream_chars)
        if raw_stream != self.raw_stream:
            self.raw_stream = raw_stream
            mutated = True
        payload_snapshot = keep_tail(self.payload_snapshot, limits.max_payload_chars)
        if payload_snapshot != self.payload_snapshot:
            self.payload_snapshot = payload_snapshot
            mutated = True
        return mutated


class ImageEntry(SQLModel):
    """Aggregate of all attempts for one source image (attempts newest first)."""

    image_id: str
    account_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_url: Optional[str] = None
    image_prompt: Optional[str] = None
    image_create_time: Optional[datetime] = None
    image_resolution: Optional[Any] = None
    image_model_name: Optional[str] = None
    attempts: list[Attempt] = Field(default_factory=list)
    success_count: int = 0
    fail_count: int = 0
    last_success_at: Optional[datetime] = None
    last_moderated_at: Optional[datetime] = None
    completeness_lock: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator(
        "image_create_time",
        "last_success_at",
        "last_moderated_at",
        "created_at",
        "updated_at",
        mode="after",
    )
    @classmethod
    def _utc_times(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def get_attempt(self, attempt_id: str) -> Optional[Attempt]:
        for attempt in self.attempts:
            if attempt.id == attempt_id:
                return attempt
        return None

    def find_attempt_by_video(self, video_id: str) -> Optional[Attempt]:
        """Find the attempt recorded for a remote video (by attempt id or video id)."""
        for attempt in self.attempts:
            if attempt.id == video_id or attempt.video_id == video_id:
                return attempt
        return None

    def add_attempt(self, attempt: Attempt) -> Attempt:
        """Insert as the newest attempt."""
        self.attempts.insert(0, attempt)
        self.updated_at = utcnow()
        return attempt

    def remove_attempt(self, attempt_id: str) -> bool:
        for index, attempt in enumerate(self.attempts):
            if attempt.id == attempt_id:
                del self.attempts[index]
                self.recalculate_counters()
                self.updated_at = utcnow()
                return True
        return False

    def recalculate_counters(self) -> None:
        self.success_count = sum(1 for a in self.attempts if a.status == AttemptStatus.SUCCESS)
        self.fail_count = sum(
            1
            for a in self.attempts
            if a.status in (AttemptStatus.MODERATED, AttemptStatus.FAILED)
        )

    def enforce_limits(self, limits: HistoryLimits) -> bool:
        """Apply per-entry retention budgets (oldest attempts trimmed first).

        Returns:
            True if the entry changed
        """
        mutated = False
        if len(self.attempts) > limits.max_attempts_per_image:
            del self.attempts[limits.max_attempts_per_image :]
            mutated = True
        for attempt in self.attempts:
            if attempt.enforce_limits(limits):
                mutated = True
        if mutated:
            self.recalculate_counters()
        return mutated


class ImageEntryRecord(SQLModel, table=True):
    """Durable row for an ImageEntry.

    The full entry (attempts included) lives in the JSON ``document`` column;
    the scalar columns exist for lookups and retention ordering.
    """

    __tablename__ = "image_entries"  # type: ignore[assignment]

    image_id: str = Field(primary_key=True, max_length=64)
    account_id: Optional[str] = Field(default=None, index=True, max_length=64)
    completeness_lock: bool = Field(default=False)
    attempt_count: int = Field(default=0, ge=0)
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), index=True, nullable=False),
    )
    document: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    @classmethod
    def from_entry(cls, entry: ImageEntry) -> "ImageEntryRecord":
        return cls(
            image_id=entry.image_id,
            account_id=entry.account_id,
            completeness_lock=entry.completeness_lock,
            attempt_count=len(entry.attempts),
            updated_at=entry.updated_at,
            document=entry.model_dump(mode="json"),
        )

    def apply(self, entry: ImageEntry) -> None:
        """Overwrite this row with the entry's current state."""
        self.account_id = entry.account_id
        self.completeness_lock = entry.completeness_lock
        self.attempt_count = len(entry.attempts)
        self.updated_at = entry.updated_at
        self.document = entry.model_dump(mode="json")

    def to_entry(self) -> ImageEntry:
        return ImageEntry.model_validate(self.document)
