"""GenerationJob entity - the user-issued job driven by the moderation retry policy."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import model_validator
from sqlmodel import Field, SQLModel

from genledger.models.history import utcnow


class JobStatus(str, Enum):
    """Job lifecycle status."""

    IDLE = "idle"
    GENERATING = "generating"
    MODERATED = "moderated"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class InvalidStateTransition(Exception):
    """Raised when attempting an invalid job or attempt state transition."""

    pass


class RetryRecord(SQLModel):
    """One entry of a job's retry history."""

    attempt: int
    reason: Optional[str] = None
    prompt: str
    timestamp: datetime = Field(default_factory=utcnow)


class GenerationJob(SQLModel):
    """A generation job with moderation retry tracking.

    State machine:
        idle -> generating -> {moderated, completed, failed}
        moderated -> retrying -> generating   (retry loop)
        moderated -> failed                   (retries exhausted)
    """

    id: str = Field(default_factory=lambda: f"job_{uuid4()}")
    prompt: str
    original_prompt: Optional[str] = None
    use_spicy: bool = False
    status: JobStatus = JobStatus.IDLE
    retry_count: int = Field(default=0, ge=0)
    moderation_reason: Optional[str] = None
    retry_history: list[RetryRecord] = Field(default_factory=list)
    failure_reason: Optional[str] = None
    fallback_used: bool = False
    image_id: Optional[str] = None
    attempt_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _remember_original_prompt(self) -> "GenerationJob":
        if self.original_prompt is None:
            self.original_prompt = self.prompt
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def mark_generating(self) -> None:
        """Transition from idle or retrying to generating.

        Raises:
            InvalidStateTransition: If current status is not idle or retrying
        """
        if self.status not in (JobStatus.IDLE, JobStatus.RETRYING):
            raise InvalidStateTransition(
                f"Cannot mark generating from {self.status.value}. "
                "Job must be in idle or retrying state."
            )
        self.status = JobStatus.GENERATING
        self.updated_at = utcnow()

    def mark_moderated(self, reason: Optional[str]) -> RetryRecord:
        """Transition from generating to moderated and log the rejection.

        Every moderation counts against the same retry budget, including
        moderations of an already retried prompt.

        Args:
            reason: Moderation reason reported by the service

        Returns:
            The retry history record appended for this moderation

        Raises:
            InvalidStateTransition: If current status is not generating
        """
        if self.status != JobStatus.GENERATING:
            raise InvalidStateTransition(
                f"Cannot mark moderated from {self.status.value}. Job must be in generating state."
            )
        self.status = JobStatus.MODERATED
        self.moderation_reason = reason
        self.retry_count += 1
        record = RetryRecord(attempt=self.retry_count, reason=reason, prompt=self.prompt)
        self.retry_history.append(record)
        self.updated_at = utcnow()
        return record

    def mark_retrying(self, prompt: str) -> None:
        """Transition from moderated to retrying with the prompt to re-issue.

        Raises:
            InvalidStateTransition: If current status is not moderated
            ValueError: If prompt is empty
        """
        if self.status != JobStatus.MODERATED:
            raise InvalidStateTransition(
                f"Cannot mark retrying from {self.status.value}. Job must be in moderated state."
            )
        if not prompt:
            raise ValueError("prompt is required")
        self.prompt = prompt
        self.status = JobStatus.RETRYING
        self.updated_at = utcnow()

    def mark_fallback(self) -> None:
        """Disable elevated mode and restart the retry budget for a single reissue.

        Raises:
            InvalidStateTransition: If the job is not moderated, not elevated,
                or has already fallen back once
        """
        if self.status != JobStatus.MODERATED or not self.use_spicy or self.fallback_used:
            raise InvalidStateTransition(
                f"Cannot fall back from {self.status.value} (use_spicy={self.use_spicy}, "
                f"fallback_used={self.fallback_used})."
            )
        self.use_spicy = False
        self.fallback_used = True
        self.retry_count = 0
        self.prompt = self.original_prompt or self.prompt
        self.status = JobStatus.RETRYING
        self.updated_at = utcnow()

    def mark_completed(self) -> None:
        """Transition from generating to completed.

        Raises:
            InvalidStateTransition: If current status is not generating
        """
        if self.status != JobStatus.GENERATING:
            raise InvalidStateTransition(
                f"Cannot mark completed from {self.status.value}. Job must be in generating state."
            )
        self.status = JobStatus.COMPLETED
        self.updated_at = utcnow()

    def mark_failed(self, reason: str) -> None:
        """Transition from any non-terminal state to failed.

        Args:
            reason: Failure reason code (e.g. MAX_RETRIES_EXCEEDED)

        Raises:
            InvalidStateTransition: If current status is already terminal
        """
        if self.is_terminal:
            raise InvalidStateTransition(
                f"Cannot mark failed from terminal state {self.status.value}."
            )
        self.failure_reason = reason
        self.status = JobStatus.FAILED
        self.updated_at = utcnow()
