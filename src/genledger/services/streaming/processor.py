"""Stream Processor - applies a generation response stream to its Attempt.

Flow for one armed request:
1. ``start`` arms the initial stall guard
2. ``process`` reads the body incrementally, one complete line at a time
3. each parsed record updates progress/video/moderation state and resets the guard
4. the attempt is finalized once: on progress 100, on stream end/error, or on guard expiry

Nothing raised while reading the stream escapes ``process``: transport errors
become a failed finalize and malformed lines are skipped.
"""

import asyncio
from typing import AsyncIterable, Awaitable, Callable, Iterable, Optional

import structlog

from genledger.models.history import AttemptStatus, HistoryLimits, utcnow
from genledger.services.correlation.context import (
    AccountContext,
    ArmedRequestRegistry,
    GenerationContext,
)
from genledger.services.correlation.extractors import (
    cleanup_prompt_text,
    extract_account_id_from_video_url,
)
from genledger.services.events import RAIL_PROGRESS, EventBus
from genledger.services.exceptions import StreamParseError
from genledger.services.history.service import FinalizeOutcome, HistoryService
from genledger.services.moderation.detector import (
    detect_moderated_content,
    extract_moderation_reason,
)
from genledger.services.streaming.parser import LineBuffer, parse_stream_line, read_stream_record
from genledger.services.streaming.stall_guard import StallGuard

logger = structlog.get_logger()

STALL_REASON = "No progress updates received within timeout window"
FORCE_SUCCESS_PROGRESS = 99

FinalizeHook = Callable[[GenerationContext, FinalizeOutcome], Awaitable[None]]


class StreamProcessor:
    """Consumes response streams for armed requests."""

    def __init__(
        self,
        history: HistoryService,
        registry: ArmedRequestRegistry,
        accounts: AccountContext,
        guard: Optional[StallGuard] = None,
        limits: Optional[HistoryLimits] = None,
        asset_base_url: str = "https://assets.grok.com",
        events: Optional[EventBus] = None,
        on_finalized: Optional[FinalizeHook] = None,
    ):
        self.history = history
        self.registry = registry
        self.accounts = accounts
        self.guard = guard or StallGuard()
        self.limits = limits or history.limits
        self.asset_base_url = asset_base_url
        self.events = events or history.events
        self.on_finalized = on_finalized
        self._tasks: set[asyncio.Task] = set()

    def start(self, context: GenerationContext) -> None:
        """Arm the initial guard for a freshly correlated request."""
        self.guard.schedule_initial(context, self.handle_stall)

    async def process(
        self,
        context: GenerationContext,
        chunks: AsyncIterable[bytes | str] | Iterable[bytes | str],
    ) -> FinalizeOutcome | None:
        """Read the whole stream and finalize the attempt.

        Args:
            context: Stream context returned by correlation
            chunks: Response body chunks (sync or async iterable)

        Returns:
            The finalize outcome, or None if another path already finalized
        """
        buffer = LineBuffer()
        try:
            if hasattr(chunks, "__aiter__"):
                async for chunk in chunks:  # type: ignore[union-attr]
                    await self._feed(context, buffer, chunk)
            else:
                for chunk in chunks:  # type: ignore[union-attr]
                    await self._feed(context, buffer, chunk)
            for line in buffer.flush():
                await self._handle_line(context, line)
        except Exception as e:
            logger.error(
                "stream.read_failed",
                request_id=context.request_id,
                attempt_id=context.attempt_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return await self.finalize(context, status=AttemptStatus.FAILED, error=str(e))

        if context.completed:
            return None
        logger.info(
            "stream.ended_incomplete",
            request_id=context.request_id,
            last_progress=context.last_progress,
        )
        return await self.finalize(context)

    async def _feed(
        self, context: GenerationContext, buffer: LineBuffer, chunk: bytes | str
    ) -> None:
        for line in buffer.feed(chunk):
            await self._handle_line(context, line)

    async def _handle_line(self, context: GenerationContext, line: str) -> None:
        context.capture(line + "\n", self.limits.max_stream_chars)
        try:
            payload = parse_stream_line(line)
        except StreamParseError as e:
            logger.warning(
                "stream.parse_failed",
                request_id=context.request_id,
                error=str(e),
                preview=line[:200],
            )
            return
        if payload is not None:
            await self.handle_record(context, payload)

    async def handle_record(self, context: GenerationContext, payload: dict) -> None:
        """Apply one parsed stream record."""
        if context.completed:
            return
        context.last_event_at = utcnow()
        if context.account_id:
            self.accounts.set_active(context.account_id, "stream-context")

        record = read_stream_record(payload, self.asset_base_url)
        video = record.video
        if video is not None:
            if video.moderated:
                context.moderated = True
                context.moderation_reason = video.moderation_reason or context.moderation_reason
            if video.video_id:
                context.video_id = video.video_id

            if video.progress is not None:
                if video.progress != context.last_progress or video.moderated:
                    await self.history.append_progress(
                        context.image_id,
                        context.attempt_id,
                        video.progress,
                        moderated=video.moderated,
                        moderation_reason=video.moderation_reason,
                        video_url=video.video_url,
                        video_id=video.video_id,
                        video_prompt=video.video_prompt if video.has_video_prompt else None,
                    )
                    context.last_progress = video.progress
                    self.events.publish(
                        RAIL_PROGRESS,
                        image_id=context.image_id,
                        attempt_id=context.attempt_id,
                        progress=video.progress,
                        moderated=video.moderated,
                    )
                    logger.debug(
                        "stream.progress",
                        request_id=context.request_id,
                        progress=video.progress,
                        moderated=video.moderated,
                    )
                self.guard.schedule_for_progress(context, video.progress, self.handle_stall)

            if video.video_url and video.video_url != context.video_url:
                context.video_url = video.video_url
                await self.history.update_attempt(
                    context.image_id, context.attempt_id, video_url=video.video_url
                )
                account_from_url = extract_account_id_from_video_url(video.video_url)
                if account_from_url:
                    self.accounts.set_active(account_from_url, "stream-video-url")

            if video.has_video_prompt and video.video_prompt != context.video_prompt:
                context.video_prompt = video.video_prompt
                await self.history.update_attempt(
                    context.image_id, context.attempt_id, video_prompt=video.video_prompt
                )

            if video.progress is not None and video.progress >= 100:
                await self.finalize(
                    context,
                    status=None if video.moderated else AttemptStatus.SUCCESS,
                    moderated=video.moderated,
                )
                return
        elif detect_moderated_content(payload) and not context.moderated:
            # Refusal reported outside the video object
            context.moderated = True
            context.moderation_reason = extract_moderation_reason(payload)
            logger.info(
                "stream.moderated_response",
                request_id=context.request_id,
                reason=context.moderation_reason,
            )

        if record.user_message:
            cleaned = cleanup_prompt_text(record.user_message)
            if cleaned and cleaned != context.prompt:
                context.prompt = cleaned
                await self.history.update_attempt(
                    context.image_id, context.attempt_id, prompt=cleaned
                )

        if record.model_message:
            context.final_message = record.model_message
            await self.history.update_attempt(
                context.image_id, context.attempt_id, final_message=record.model_message
            )

    async def finalize(
        self,
        context: GenerationContext,
        status: Optional[AttemptStatus] = None,
        moderated: bool = False,
        error: Optional[str] = None,
    ) -> FinalizeOutcome | None:
        """Finalize the context's attempt once; later calls are no-ops.

        Tears down the guard and disarms the request whatever the outcome.
        """
        if context.completed:
            return None
        context.completed = True
        self.guard.cancel(context)

        try:
            outcome = await self.history.finalize_attempt(
                context.image_id,
                context.attempt_id,
                status=status,
                moderated=moderated or context.moderated,
                moderation_reason=context.moderation_reason,
                error=error,
                raw_stream=context.raw_stream(self.limits.max_stream_chars),
                video_url=context.video_url,
                video_id=context.video_id,
                video_prompt=context.video_prompt,
                final_message=context.final_message,
                prompt=context.prompt,
            )
        finally:
            self.registry.disarm(context.request_id)

        if outcome is not None and outcome.finalized and self.on_finalized is not None:
            try:
                await self.on_finalized(context, outcome)
            except Exception as e:
                logger.error(
                    "stream.post_finalize_failed",
                    request_id=context.request_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
        return outcome

    def handle_stall(self, context: GenerationContext) -> None:
        """Guard expiry callback (runs on the loop, outside any coroutine)."""
        task = asyncio.get_running_loop().create_task(self.expire(context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def expire(self, context: GenerationContext) -> FinalizeOutcome | None:
        """Synthetic terminal outcome for a silent stream.

        Silence after (nearly) complete output counts as success, since the
        closing chatter was most likely lost; anything else fails.
        """
        if context.completed:
            return None
        if context.last_progress >= FORCE_SUCCESS_PROGRESS or context.video_url:
            return await self.finalize(context, status=AttemptStatus.SUCCESS)
        return await self.finalize(
            context,
            status=AttemptStatus.FAILED,
            moderated=context.moderated,
            error=STALL_REASON,
        )

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for pending guard expiries (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
