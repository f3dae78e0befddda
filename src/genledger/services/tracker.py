"""Generation tracker - wires the engine components into one service.

The tracker owns the shared state (account context, armed requests, active
job) and connects the pieces:

    observe_request -> RequestCorrelator -> StreamProcessor.start
    process_stream  -> StreamProcessor.process -> _on_finalized
    _on_finalized   -> RetryController (moderated) or job completion
    sync_listing    -> BulkMergeEngine -> history cap

It is the only component that publishes ``generation-detected`` and
``generation-status`` notifications.
"""

import asyncio
from typing import Any, AsyncIterable, Iterable, Optional
from urllib.parse import urlparse

import structlog

from genledger.core.config import Settings
from genledger.models.history import Attempt, AttemptStatus, HistoryLimits
from genledger.models.job import GenerationJob, JobStatus
from genledger.services.automation.generator_client import Generator, HttpGeneratorClient
from genledger.services.correlation.context import (
    AccountContext,
    ArmedRequestRegistry,
    GenerationContext,
    OutboundRequest,
    PendingUpload,
)
from genledger.services.correlation.correlator import RequestCorrelator
from genledger.services.events import GENERATION_DETECTED, GENERATION_STATUS, EventBus
from genledger.services.history.service import FinalizeOutcome, HistoryService
from genledger.services.history.store import HistoryStore
from genledger.services.moderation.retry_controller import RetryController, RetryPolicy
from genledger.services.streaming.processor import StreamProcessor
from genledger.services.streaming.stall_guard import GuardWindows, StallGuard
from genledger.services.sync.bulk_merge import BulkMergeEngine, MergeResult

logger = structlog.get_logger()

SUBMIT_FAILED = "SUBMIT_FAILED"
GENERATION_FAILED = "GENERATION_FAILED"


class GenerationTracker:
    """Entry point for everything observed from the generator page."""

    def __init__(
        self,
        store: HistoryStore,
        generator: Optional[Generator] = None,
        limits: Optional[HistoryLimits] = None,
        retry_policy: Optional[RetryPolicy] = None,
        guard_windows: Optional[GuardWindows] = None,
        events: Optional[EventBus] = None,
        endpoint_path: str = "/rest/app-chat/conversations/new",
        asset_base_url: str = "https://assets.grok.com",
        sleep=asyncio.sleep,
    ):
        self.events = events or EventBus()
        self.limits = limits or HistoryLimits()
        self.accounts = AccountContext()
        self.registry = ArmedRequestRegistry()
        self.generator = generator
        self.page_path: Optional[str] = None

        self.history = HistoryService(store, self.limits, self.events)
        self.correlator = RequestCorrelator(
            self.history, self.registry, endpoint_path, asset_base_url
        )
        self.processor = StreamProcessor(
            self.history,
            self.registry,
            self.accounts,
            guard=StallGuard(guard_windows),
            limits=self.limits,
            asset_base_url=asset_base_url,
            events=self.events,
            on_finalized=self._on_finalized,
        )
        self.retry_controller = (
            RetryController(
                generator,
                retry_policy,
                self.events,
                page_path=lambda: self.page_path,
                sleep=sleep,
            )
            if generator is not None
            else None
        )
        self.merge_engine = BulkMergeEngine(
            store, self.limits, self.events, working_set=self.history.working_entries
        )

        self.active_job: Optional[GenerationJob] = None
        self.jobs: dict[str, GenerationJob] = {}
        self._contexts: dict[str, GenerationContext] = {}
        self._job_by_request: dict[str, str] = {}
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls, settings: Settings, store: HistoryStore, generator: Optional[Generator] = None
    ) -> "GenerationTracker":
        """Build a tracker configured from application settings."""
        if generator is None and settings.automation_bridge_url:
            generator = HttpGeneratorClient(
                settings.automation_bridge_url, settings.automation_timeout_seconds
            )
        return cls(
            store,
            generator=generator,
            limits=settings.history_limits,
            retry_policy=RetryPolicy.from_settings(settings),
            guard_windows=GuardWindows(
                initial=settings.guard_initial_seconds,
                default=settings.guard_default_seconds,
                late=settings.guard_late_seconds,
                final=settings.guard_final_seconds,
                minimum=settings.guard_min_seconds,
            ),
            endpoint_path=settings.generation_endpoint_path,
            asset_base_url=settings.asset_base_url,
        )

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    async def observe_request(
        self, request: OutboundRequest, page_url: Optional[str] = None
    ) -> GenerationContext | None:
        """Correlate an outbound request and arm it for its stream.

        Returns:
            The stream context, or None if the request is not tracked
        """
        if page_url:
            self.page_path = urlparse(page_url).path
        context = await self.correlator.correlate(request, self.accounts, page_url)
        if context is None:
            return None

        self._contexts[context.request_id] = context
        self.processor.start(context)

        job = self.active_job
        if job is not None and job.status == JobStatus.GENERATING:
            job.image_id = context.image_id
            job.attempt_id = context.attempt_id
            self._job_by_request[context.request_id] = job.id

        self.events.publish(
            GENERATION_DETECTED,
            request_id=context.request_id,
            account_id=context.account_id,
            image_id=context.image_id,
            attempt_id=context.attempt_id,
            prompt=context.prompt,
            thumbnail_url=context.thumbnail_url,
            image_reference=context.image_reference,
        )
        return context

    async def process_stream(
        self,
        request_id: str,
        chunks: AsyncIterable[bytes | str] | Iterable[bytes | str],
    ) -> Attempt | None:
        """Feed the response body of an armed request through the stream processor.

        Returns:
            The attempt as it stands after the stream, or None if the request
            is unknown (never armed, or already finalized and released)
        """
        context = self._contexts.get(request_id)
        if context is None:
            logger.warning("stream.unknown_request", request_id=request_id)
            return None
        try:
            await self.processor.process(context, chunks)
        finally:
            self._contexts.pop(request_id, None)

        entry = await self.history.get_entry(context.image_id)
        return entry.get_attempt(context.attempt_id) if entry else None

    async def observe_content_request(self, url: str) -> Optional[str]:
        return await self.correlator.observe_content_request(url, self.accounts)

    def register_upload(self, response: Any) -> Optional[PendingUpload]:
        return self.correlator.register_upload(response, self.accounts)

    async def sync_listing(
        self, posts: list[Any], account_id: Optional[str] = None
    ) -> MergeResult:
        """Merge a bulk listing and apply the account's history cap."""
        result = await self.merge_engine.ingest(posts, self.accounts, account_id)
        if result.written and result.account_id:
            await self.history.enforce_history_cap(result.account_id)
        return result

    async def delete_attempt(self, image_id: str, attempt_id: str) -> bool:
        """Delete an attempt and forget the image once its entry is gone."""
        deleted = await self.history.delete_attempt(image_id, attempt_id)
        if deleted and await self.history.get_entry(image_id) is None:
            self.accounts.forget_image(image_id)
        return deleted

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def submit_job(self, prompt: str, use_spicy: bool = False) -> GenerationJob:
        """Start a new job and send its prompt through the generator.

        The new job replaces the active one; a send failure fails the job.
        """
        job = GenerationJob(prompt=prompt, use_spicy=use_spicy)
        self.jobs[job.id] = job
        self.active_job = job
        job.mark_generating()
        logger.info("job.submitted", job_id=job.id, use_spicy=use_spicy)

        if self.generator is not None:
            try:
                await self.generator.send_to_generator(prompt, False)
            except Exception as e:
                logger.error(
                    "job.submit_failed", job_id=job.id, error=str(e), error_type=type(e).__name__
                )
                job.mark_failed(SUBMIT_FAILED)
                self._publish_status(job, "failed")
        return job

    def get_job(self, job_id: str) -> Optional[GenerationJob]:
        return self.jobs.get(job_id)

    async def _on_finalized(self, context: GenerationContext, outcome: FinalizeOutcome) -> None:
        self._contexts.pop(context.request_id, None)
        job_id = self._job_by_request.pop(context.request_id, None)
        job = self.jobs.get(job_id) if job_id else None
        if job is None or job.status != JobStatus.GENERATING:
            return

        attempt = outcome.attempt
        if attempt.status == AttemptStatus.MODERATED:
            if self.retry_controller is None:
                job.mark_moderated(attempt.moderation_reason)
                self._publish_status(job, "moderated")
                return
            # Retry waits out a backoff; the stream request must not block on it
            task = asyncio.get_running_loop().create_task(
                self.retry_controller.handle_moderation(job, attempt.moderation_reason)
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif attempt.status == AttemptStatus.SUCCESS:
            job.mark_completed()
            logger.info("job.completed", job_id=job.id, retry_count=job.retry_count)
            self._publish_status(job, "completed")
        else:
            job.mark_failed(attempt.error or GENERATION_FAILED)
            logger.info("job.failed", job_id=job.id, reason=job.failure_reason)
            self._publish_status(job, "failed")

    def _publish_status(self, job: GenerationJob, state: str) -> None:
        self.events.publish(
            GENERATION_STATUS,
            job_id=job.id,
            state=state,
            retry_count=job.retry_count,
            reason=job.failure_reason or job.moderation_reason,
        )

    async def drain(self) -> None:
        """Wait for pending guard expiries and retries."""
        while self._tasks or self.processor.pending_tasks:
            await self.processor.drain()
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel open stall guards and background retries."""
        for context in list(self._contexts.values()):
            self.processor.guard.cancel(context)
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._contexts.clear()
