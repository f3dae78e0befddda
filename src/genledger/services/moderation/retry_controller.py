"""Moderation & Retry Controller.

Drives a GenerationJob after the service moderates its output:

    record moderation -> page/policy checks -> backoff wait -> page re-check
        -> re-issue (progressively softened) prompt

Exhausted retries of an elevated ("spicy") job fall back once to normal mode
with the unmodified original prompt. Re-issue errors never propagate: they
fail the job with a reason code.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

from genledger.models.job import GenerationJob
from genledger.services.automation.generator_client import Generator
from genledger.services.events import GENERATION_STATUS, EventBus
from genledger.services.moderation.softening import apply_progressive_enhancement

logger = structlog.get_logger()

BASE_DELAY_MS = 2000
MAX_DELAY_MS = 30000

VIDEO_CAPABLE_EXACT_PATHS = frozenset({"", "/", "/imagine", "/imagine/", "/imagine/favorites"})

# Failure reason codes
RETRY_FAILED = "RETRY_FAILED"
FALLBACK_FAILED = "FALLBACK_FAILED"
MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"


def compute_retry_delay(retry_count: int, multiplier: float = 1.5) -> float:
    """Backoff in milliseconds: ``min(2000 * multiplier ** retry_count, 30000)``."""
    return min(BASE_DELAY_MS * multiplier**retry_count, MAX_DELAY_MS)


def is_video_capable_path(path: Optional[str]) -> bool:
    """True for page locations where a video generation can be re-issued."""
    path = path or ""
    return "/imagine/post/" in path or "/chat/" in path or path in VIDEO_CAPABLE_EXACT_PATHS


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings (see Settings for the environment variables)."""

    auto_retry: bool = True
    max_retries: int = 3
    delay_multiplier: float = 1.5
    progressive_enhancement: bool = True
    fallback_to_normal_mode: bool = True
    notify_on_retry: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            auto_retry=settings.auto_retry_on_moderation,
            max_retries=settings.max_moderation_retries,
            delay_multiplier=settings.retry_delay_multiplier,
            progressive_enhancement=settings.progressive_enhancement,
            fallback_to_normal_mode=settings.fallback_to_normal_mode,
            notify_on_retry=settings.notify_on_moderation_retry,
        )


class RetryDecision(str, Enum):
    """What the controller did with a moderation signal."""

    RETRIED = "retried"
    FALLBACK = "fallback"
    SKIPPED_PAGE = "skipped_page"
    DISABLED = "disabled"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class RetryController:
    """Reacts to moderation of the active job."""

    def __init__(
        self,
        generator: Generator,
        policy: Optional[RetryPolicy] = None,
        events: Optional[EventBus] = None,
        page_path: Callable[[], Optional[str]] = lambda: "/",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize controller.

        Args:
            generator: Collaborator that re-issues prompts
            policy: Retry policy (defaults mirror Settings defaults)
            events: Bus for generation-status notifications
            page_path: Returns the current generator page path
            sleep: Awaitable sleep in seconds (injectable for tests)
        """
        self.generator = generator
        self.policy = policy or RetryPolicy()
        self.events = events or EventBus()
        self.page_path = page_path
        self.sleep = sleep

    async def handle_moderation(
        self, job: GenerationJob, reason: Optional[str] = None
    ) -> RetryDecision:
        """Record a moderation of ``job`` and retry it if policy allows.

        Args:
            job: Job in generating state
            reason: Moderation reason reported by the service

        Returns:
            The decision taken
        """
        job.mark_moderated(reason)
        retry_index = job.retry_count - 1
        log = logger.bind(job_id=job.id, retry_count=job.retry_count, reason=reason)
        self._publish(job, "moderated")

        if not is_video_capable_path(self.page_path()):
            log.info("retry.skipped_page", path=self.page_path())
            return RetryDecision.SKIPPED_PAGE

        if not self.policy.auto_retry:
            log.info("retry.disabled")
            return RetryDecision.DISABLED

        if retry_index >= self.policy.max_retries:
            log.warning("retry.exhausted", max_retries=self.policy.max_retries)
            if self.policy.fallback_to_normal_mode and job.use_spicy and not job.fallback_used:
                return await self._fallback(job)
            job.mark_failed(MAX_RETRIES_EXCEEDED)
            self._publish(job, "failed")
            return RetryDecision.EXHAUSTED

        delay_ms = compute_retry_delay(retry_index, self.policy.delay_multiplier)
        log.info(
            "retry.scheduled",
            attempt=retry_index + 1,
            max_retries=self.policy.max_retries,
            delay_ms=delay_ms,
        )
        if self.policy.notify_on_retry:
            self._publish(
                job,
                "retrying",
                attempt=retry_index + 1,
                max_retries=self.policy.max_retries,
                delay_ms=delay_ms,
            )

        await self.sleep(delay_ms / 1000)

        # The user may have navigated away during the wait
        if not is_video_capable_path(self.page_path()):
            log.info("retry.cancelled_navigation", path=self.page_path())
            return RetryDecision.CANCELLED

        base_prompt = job.original_prompt or job.prompt
        prompt = (
            apply_progressive_enhancement(base_prompt, retry_index, job.use_spicy)
            if self.policy.progressive_enhancement
            else base_prompt
        )
        job.mark_retrying(prompt)

        try:
            await self.generator.send_to_generator(prompt, False)
        except Exception as e:
            log.error("retry.reissue_failed", error=str(e), error_type=type(e).__name__)
            job.mark_failed(RETRY_FAILED)
            self._publish(job, "failed")
            return RetryDecision.FAILED

        job.mark_generating()
        log.info("retry.reissued", attempt=retry_index + 1)
        return RetryDecision.RETRIED

    async def _fallback(self, job: GenerationJob) -> RetryDecision:
        job.mark_fallback()
        logger.info("retry.fallback_normal_mode", job_id=job.id)
        try:
            await self.generator.send_to_generator(job.prompt, False)
        except Exception as e:
            logger.error(
                "retry.fallback_failed", job_id=job.id, error=str(e), error_type=type(e).__name__
            )
            job.mark_failed(FALLBACK_FAILED)
            self._publish(job, "failed")
            return RetryDecision.FAILED

        job.mark_generating()
        self._publish(job, "fallback")
        return RetryDecision.FALLBACK

    def _publish(self, job: GenerationJob, state: str, **extra) -> None:
        self.events.publish(
            GENERATION_STATUS,
            job_id=job.id,
            state=state,
            retry_count=job.retry_count,
            reason=job.failure_reason or job.moderation_reason,
            **extra,
        )
