"""Self-resetting stall guard for in-flight generation streams."""

import asyncio
from typing import Callable, Optional

import structlog

from genledger.services.correlation.context import GenerationContext

logger = structlog.get_logger()


class GuardWindows:
    """Guard durations in seconds.

    Late-stage renders go quiet for longer between chunks, so the window
    widens as progress approaches completion.
    """

    def __init__(
        self,
        initial: float = 60.0,
        default: float = 90.0,
        late: float = 120.0,
        final: float = 150.0,
        minimum: float = 15.0,
    ):
        self.initial = initial
        self.default = default
        self.late = late
        self.final = final
        self.minimum = minimum

    def for_progress(self, progress: float) -> float:
        if progress >= 95:
            return self.final
        if progress >= 75:
            return self.late
        return self.default

    def clamp(self, seconds: float) -> float:
        return max(self.minimum, seconds)


class StallGuard:
    """Schedules one expiry timer per context; rescheduling cancels the previous one."""

    def __init__(
        self,
        windows: Optional[GuardWindows] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.windows = windows or GuardWindows()
        self._loop = loop

    def schedule(
        self,
        context: GenerationContext,
        seconds: float,
        on_expire: Callable[[GenerationContext], None],
    ) -> None:
        self.cancel(context)
        if context.completed:
            return
        delay = self.windows.clamp(seconds)
        loop = self._loop or asyncio.get_running_loop()
        context.timer = loop.call_later(delay, self._fire, context, on_expire)

    def schedule_initial(
        self, context: GenerationContext, on_expire: Callable[[GenerationContext], None]
    ) -> None:
        self.schedule(context, self.windows.initial, on_expire)

    def schedule_for_progress(
        self,
        context: GenerationContext,
        progress: float,
        on_expire: Callable[[GenerationContext], None],
    ) -> None:
        self.schedule(context, self.windows.for_progress(progress), on_expire)

    def cancel(self, context: GenerationContext) -> None:
        if context.timer is not None:
            context.timer.cancel()
            context.timer = None

    @staticmethod
    def _fire(context: GenerationContext, on_expire: Callable[[GenerationContext], None]) -> None:
        context.timer = None
        if context.completed:
            return
        logger.warning(
            "stream.stalled",
            request_id=context.request_id,
            image_id=context.image_id,
            attempt_id=context.attempt_id,
            last_progress=context.last_progress,
        )
        on_expire(context)
