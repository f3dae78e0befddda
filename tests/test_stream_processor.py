"""Tests for the stream processor and its stall guard."""

import asyncio
import json

import pytest
import pytest_asyncio

from genledger.models.history import AttemptStatus
from genledger.services.correlation.context import (
    AccountContext,
    ArmedRequest,
    ArmedRequestRegistry,
    GenerationContext,
)
from genledger.services.events import RAIL_PROGRESS
from genledger.services.history.service import HistoryService
from genledger.services.streaming.processor import STALL_REASON, StreamProcessor
from genledger.services.streaming.stall_guard import GuardWindows, StallGuard

ACCOUNT_ID = "0b5c1a4e-7f3d-4c2a-9e8b-1d2f3a4b5c6d"
IMAGE_ID = "a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d"
VIDEO_URL = f"https://assets.grok.com/users/{ACCOUNT_ID}/generated/v1/generated_video.mp4"


def video_line(**video) -> str:
    """One NDJSON stream line carrying a video generation object."""
    record = {"result": {"response": {"streamingVideoGenerationResponse": video}}}
    return json.dumps(record) + "\n"


@pytest.fixture
def history(memory_store, events):
    return HistoryService(memory_store, events=events)


@pytest.fixture
def registry():
    return ArmedRequestRegistry()


@pytest.fixture
def finalized():
    return []


@pytest.fixture
def processor(history, registry, finalized):
    async def on_finalized(context, outcome):
        finalized.append(outcome)

    return StreamProcessor(
        history,
        registry,
        AccountContext(),
        guard=StallGuard(GuardWindows(initial=5, default=5, late=5, final=5, minimum=1)),
        on_finalized=on_finalized,
    )


@pytest_asyncio.fixture
async def context(history, registry):
    attempt = await history.create_attempt(IMAGE_ID, prompt="wave", account_id=ACCOUNT_ID)
    registry.arm(
        ArmedRequest(
            request_id="req-1", account_id=ACCOUNT_ID, image_id=IMAGE_ID, attempt_id=attempt.id
        )
    )
    return GenerationContext(
        request_id="req-1", account_id=ACCOUNT_ID, image_id=IMAGE_ID, attempt_id=attempt.id
    )


async def load_attempt(history, context):
    entry = await history.get_entry(context.image_id)
    return entry.get_attempt(context.attempt_id)


class TestStreamCompletion:
    @pytest.mark.asyncio
    async def test_progress_to_100_finalizes_success(
        self, processor, history, registry, context, finalized, events
    ):
        # Arrange
        chunks = [
            video_line(progress=10),
            video_line(progress=60),
            video_line(progress=100, videoUrl=VIDEO_URL, videoId="v1"),
        ]

        # Act
        processor.start(context)
        await processor.process(context, chunks)

        # Assert
        attempt = await load_attempt(history, context)
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.video_url == VIDEO_URL
        assert attempt.video_id == "v1"
        assert [e.progress for e in attempt.progress_events] == [10, 60, 100]
        assert "req-1" not in registry
        assert context.timer is None
        assert len(finalized) == 1
        rail = [n.payload["progress"] for n in events.published if n.name == RAIL_PROGRESS]
        assert rail == [10, 60, 100]

    @pytest.mark.asyncio
    async def test_malformed_line_is_skipped(self, processor, history, context):
        chunks = [video_line(progress=10), "{not json\n", video_line(progress=100)]

        await processor.process(context, chunks)

        attempt = await load_attempt(history, context)
        assert attempt.status == AttemptStatus.SUCCESS
        assert "{not json" in attempt.raw_stream

    @pytest.mark.asyncio
    async def test_records_split_across_chunks(self, processor, history, context):
        line = video_line(progress=100, videoUrl=VIDEO_URL).encode("utf-8")
        chunks = [video_line(progress=20).encode("utf-8"), line[:17], line[17:]]

        await processor.process(context, chunks)

        attempt = await load_attempt(history, context)
        assert attempt.status == AttemptStatus.SUCCESS
        assert attempt.video_url == VIDEO_URL

    @pytest.mark.asyncio
    async def test_stream_ending_early_fails(self, processor, history, context):
        outcome = await processor.process(context, [video_line(progress=80)])

        assert outcome.attempt.status == AttemptStatus.FAILED

    @pytest.mark.asyncio
    async def test_transport_error_fails_attempt(self, processor, history, context):
        async def broken_body():
            yield video_line(progress=30)
            raise ConnectionResetError("peer went away")

        outcome = await processor.process(context, broken_body())

        assert outcome.attempt.status == AttemptStatus.FAILED
        assert outcome.attempt.error == "peer went away"

    @pytest.mark.asyncio
    async def test_moderated_stream_keeps_last_clean_progress(self, processor, history, context):
        chunks = [
            video_line(progress=40),
            video_line(progress=5, moderated=True, moderationReason="policy"),
        ]

        outcome = await processor.process(context, chunks)

        assert outcome.attempt.status == AttemptStatus.MODERATED
        assert outcome.attempt.moderated_at_progress == 40
        assert outcome.attempt.moderation_reason == "policy"

    @pytest.mark.asyncio
    async def test_prompt_and_final_message_are_captured(self, processor, history, context):
        chunks = [
            json.dumps({"result": {"response": {"userResponse": {"message": "wave hello"}}}}),
            "\n",
            json.dumps({"result": {"response": {"modelResponse": {"message": "done"}}}}),
            "\n",
            video_line(progress=100),
        ]

        await processor.process(context, chunks)

        attempt = await load_attempt(history, context)
        assert attempt.prompt == "wave hello"
        assert attempt.final_message == "done"

    @pytest.mark.asyncio
    async def test_finalize_runs_once(self, processor, context, finalized):
        await processor.process(context, [video_line(progress=100)])

        assert await processor.finalize(context) is None
        assert await processor.expire(context) is None
        assert len(finalized) == 1


class TestStallGuard:
    def test_windows_widen_near_completion(self):
        windows = GuardWindows()

        assert windows.for_progress(10) == 90
        assert windows.for_progress(80) == 120
        assert windows.for_progress(97) == 150
        assert windows.clamp(1) == 15

    @pytest.mark.asyncio
    async def test_silent_stream_fails_after_window(self, history, registry, context):
        # Arrange: windows short enough to expire during the test
        windows = GuardWindows(initial=0.05, default=0.05, late=0.05, final=0.05, minimum=0.01)
        processor = StreamProcessor(history, registry, AccountContext(), guard=StallGuard(windows))
        processor.start(context)

        # Act
        await processor.handle_record(
            context, {"streamingVideoGenerationResponse": {"progress": 80}}
        )
        await asyncio.sleep(0.2)
        await processor.drain()

        # Assert
        attempt = await load_attempt(history, context)
        assert context.completed is True
        assert attempt.status == AttemptStatus.FAILED
        assert attempt.error == STALL_REASON
        assert "req-1" not in registry

    @pytest.mark.asyncio
    async def test_silence_after_near_complete_output_succeeds(self, history, registry, context):
        windows = GuardWindows(initial=0.05, default=0.05, late=0.05, final=0.05, minimum=0.01)
        processor = StreamProcessor(history, registry, AccountContext(), guard=StallGuard(windows))

        await processor.handle_record(
            context, {"streamingVideoGenerationResponse": {"progress": 99}}
        )
        await asyncio.sleep(0.2)
        await processor.drain()

        attempt = await load_attempt(history, context)
        assert attempt.status == AttemptStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_progress_resets_the_guard(self, history, registry, context):
        windows = GuardWindows(initial=0.15, default=0.15, late=0.15, final=0.15, minimum=0.01)
        processor = StreamProcessor(history, registry, AccountContext(), guard=StallGuard(windows))
        processor.start(context)

        # Each record lands before the previous window runs out
        for progress in (10, 20, 30, 40):
            await asyncio.sleep(0.08)
            await processor.handle_record(
                context, {"streamingVideoGenerationResponse": {"progress": progress}}
            )

        assert context.completed is False
        processor.guard.cancel(context)
