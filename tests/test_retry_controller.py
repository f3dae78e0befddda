"""Tests for moderation retry handling, prompt softening and the bridge client."""

import json

import httpx
import pytest

from genledger.models.job import GenerationJob, JobStatus
from genledger.services.automation.generator_client import HttpGeneratorClient
from genledger.services.events import GENERATION_STATUS
from genledger.services.exceptions import GeneratorRejectedError, GeneratorTransportError
from genledger.services.moderation import (
    RetryController,
    RetryDecision,
    RetryPolicy,
    compute_retry_delay,
    detect_moderated_content,
    extract_moderation_reason,
    is_video_capable_path,
)
from genledger.services.moderation.retry_controller import (
    FALLBACK_FAILED,
    MAX_RETRIES_EXCEEDED,
    RETRY_FAILED,
)
from genledger.services.moderation.softening import apply_progressive_enhancement

SPICY_PROMPT = json.dumps(
    {
        "scene": "an intense chase",
        "tags": ["action"],
        "cinematography": {"style": "handheld"},
    }
)


class FakeGenerator:
    """Records every prompt sent; optionally fails."""

    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, bool]] = []
        self.error = error

    async def send_to_generator(self, prompt_text: str, is_raw_mode: bool) -> None:
        self.sent.append((prompt_text, is_raw_mode))
        if self.error is not None:
            raise self.error


class FakeSleep:
    def __init__(self, on_sleep=None):
        self.calls: list[float] = []
        self.on_sleep = on_sleep

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.on_sleep is not None:
            self.on_sleep()


class Page:
    def __init__(self, path: str = "/imagine"):
        self.path = path

    def __call__(self) -> str:
        return self.path


def generating_job(prompt: str = "a dancing robot", use_spicy: bool = False) -> GenerationJob:
    job = GenerationJob(prompt=prompt, use_spicy=use_spicy)
    job.mark_generating()
    return job


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def sleep():
    return FakeSleep()


@pytest.fixture
def page():
    return Page()


@pytest.fixture
def controller(generator, sleep, page, events):
    return RetryController(generator, events=events, page_path=page, sleep=sleep)


class TestDelays:
    @pytest.mark.parametrize(
        "retry_count, expected",
        [(0, 2000), (1, 3000), (2, 4500), (10, 30000)],
    )
    def test_exponential_backoff_is_capped(self, retry_count, expected):
        assert compute_retry_delay(retry_count, 1.5) == expected

    @pytest.mark.parametrize(
        "path, expected",
        [
            ("/", True),
            ("/imagine", True),
            ("/imagine/favorites", True),
            ("/imagine/post/abc", True),
            ("/chat/123", True),
            ("/settings", False),
            ("/imagine/favorites/old", False),
        ],
    )
    def test_video_capable_paths(self, path, expected):
        assert is_video_capable_path(path) is expected


class TestSoftening:
    def test_first_retry_is_unchanged(self):
        assert apply_progressive_enhancement(SPICY_PROMPT, 0, True) == SPICY_PROMPT

    def test_second_retry_adds_safety_hints(self):
        softened = json.loads(apply_progressive_enhancement(SPICY_PROMPT, 1, True))

        assert softened["tags"] == ["action", "professional", "broadcast-safe", "family-friendly"]
        assert softened["cinematography"]["style"] == "professional broadcast quality. handheld"

    def test_later_retries_replace_sensitive_words(self):
        softened = json.loads(apply_progressive_enhancement(SPICY_PROMPT, 2, True))

        assert softened["scene"] == "an focused chase"

    def test_plain_text_and_normal_mode_prompts_are_untouched(self):
        assert apply_progressive_enhancement("an intense chase", 2, True) == "an intense chase"
        assert apply_progressive_enhancement(SPICY_PROMPT, 2, False) == SPICY_PROMPT


class TestDetector:
    def test_detects_error_markers(self):
        response = {"error": {"type": "content_policy_violation", "message": "Blocked"}}

        assert detect_moderated_content(response) is True
        assert extract_moderation_reason(response) == "Blocked"

    def test_nested_refusal_gets_default_reason(self):
        response = {"result": {"response": {"isRefused": True}}}

        assert detect_moderated_content(response) is True
        assert extract_moderation_reason(response) == "Content flagged by moderation system"

    def test_plain_records_are_not_moderated(self):
        assert detect_moderated_content({"result": {"response": {"token": "hi"}}}) is False
        assert detect_moderated_content("moderated") is False


class TestRetryFlow:
    @pytest.mark.asyncio
    async def test_moderation_triggers_retry_after_backoff(
        self, controller, generator, sleep, events
    ):
        job = generating_job()

        decision = await controller.handle_moderation(job, "policy")

        assert decision == RetryDecision.RETRIED
        assert job.status == JobStatus.GENERATING
        assert job.retry_count == 1
        assert sleep.calls == [2.0]
        assert generator.sent == [("a dancing robot", False)]
        states = [n.payload["state"] for n in events.published if n.name == GENERATION_STATUS]
        assert states == ["moderated", "retrying"]

    @pytest.mark.asyncio
    async def test_delays_grow_with_each_moderation(self, controller, sleep):
        job = generating_job()

        for _ in range(3):
            await controller.handle_moderation(job, "policy")

        assert sleep.calls == [2.0, 3.0, 4.5]

    @pytest.mark.asyncio
    async def test_retry_notification_carries_budget(self, controller, events):
        await controller.handle_moderation(generating_job(), "policy")

        retrying = [n for n in events.published if n.payload.get("state") == "retrying"][0]
        assert retrying.payload["attempt"] == 1
        assert retrying.payload["max_retries"] == 3
        assert retrying.payload["delay_ms"] == 2000

    @pytest.mark.asyncio
    async def test_spicy_prompt_is_softened_per_retry(self, controller, generator):
        job = generating_job(SPICY_PROMPT, use_spicy=True)

        for _ in range(3):
            await controller.handle_moderation(job, "policy")

        first, second, third = (json.loads(prompt) for prompt, _ in generator.sent)
        assert first["scene"] == "an intense chase"
        assert "broadcast-safe" in second["tags"]
        assert third["scene"] == "an focused chase"

    @pytest.mark.asyncio
    async def test_navigation_during_wait_cancels(self, generator, page, events):
        sleep = FakeSleep(on_sleep=lambda: setattr(page, "path", "/settings"))
        controller = RetryController(generator, events=events, page_path=page, sleep=sleep)
        job = generating_job()

        decision = await controller.handle_moderation(job, "policy")

        assert decision == RetryDecision.CANCELLED
        assert generator.sent == []
        assert job.status == JobStatus.MODERATED

    @pytest.mark.asyncio
    async def test_unsupported_page_skips_retry(self, controller, generator, sleep, page):
        page.path = "/profile"
        job = generating_job()

        assert await controller.handle_moderation(job, "policy") == RetryDecision.SKIPPED_PAGE
        assert sleep.calls == []
        assert generator.sent == []

    @pytest.mark.asyncio
    async def test_disabled_policy_records_moderation_only(self, generator, sleep, page):
        controller = RetryController(
            generator, policy=RetryPolicy(auto_retry=False), page_path=page, sleep=sleep
        )
        job = generating_job()

        assert await controller.handle_moderation(job, "policy") == RetryDecision.DISABLED
        assert job.status == JobStatus.MODERATED
        assert job.retry_count == 1

    @pytest.mark.asyncio
    async def test_reissue_error_fails_job(self, sleep, page, events):
        generator = FakeGenerator(error=GeneratorTransportError("bridge down"))
        controller = RetryController(generator, events=events, page_path=page, sleep=sleep)
        job = generating_job()

        decision = await controller.handle_moderation(job, "policy")

        assert decision == RetryDecision.FAILED
        assert job.status == JobStatus.FAILED
        assert job.failure_reason == RETRY_FAILED
        assert events.published[-1].payload["state"] == "failed"


class TestExhaustion:
    @pytest.mark.asyncio
    async def test_exhausted_normal_job_fails(self, controller, generator):
        job = generating_job()

        decisions = [await controller.handle_moderation(job, "policy") for _ in range(4)]

        assert decisions == [RetryDecision.RETRIED] * 3 + [RetryDecision.EXHAUSTED]
        assert job.status == JobStatus.FAILED
        assert job.failure_reason == MAX_RETRIES_EXCEEDED
        assert len(generator.sent) == 3

    @pytest.mark.asyncio
    async def test_exhausted_spicy_job_falls_back_once(self, controller, generator, events):
        # Arrange: burn the retry budget of an elevated job
        job = generating_job(SPICY_PROMPT, use_spicy=True)
        for _ in range(3):
            await controller.handle_moderation(job, "policy")

        # Act: the fourth moderation exhausts the budget
        decision = await controller.handle_moderation(job, "policy")

        # Assert: normal mode, original prompt, fresh budget
        assert decision == RetryDecision.FALLBACK
        assert job.use_spicy is False
        assert job.fallback_used is True
        assert job.retry_count == 0
        assert job.status == JobStatus.GENERATING
        assert generator.sent[-1] == (SPICY_PROMPT, False)
        assert events.published[-1].payload["state"] == "fallback"

    @pytest.mark.asyncio
    async def test_fallback_budget_exhaustion_fails(self, controller):
        job = generating_job(SPICY_PROMPT, use_spicy=True)
        for _ in range(4):
            await controller.handle_moderation(job, "policy")

        decisions = [await controller.handle_moderation(job, "policy") for _ in range(4)]

        assert decisions[-1] == RetryDecision.EXHAUSTED
        assert job.failure_reason == MAX_RETRIES_EXCEEDED

    @pytest.mark.asyncio
    async def test_fallback_send_error_fails_job(self, sleep, page):
        generator = FakeGenerator()
        controller = RetryController(
            generator, policy=RetryPolicy(max_retries=0), page_path=page, sleep=sleep
        )
        job = generating_job(SPICY_PROMPT, use_spicy=True)
        generator.error = GeneratorRejectedError("nope")

        assert await controller.handle_moderation(job, "policy") == RetryDecision.FAILED
        assert job.failure_reason == FALLBACK_FAILED


class TestHttpGeneratorClient:
    @pytest.mark.asyncio
    async def test_posts_prompt_to_bridge(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={"ok": True})

        client = HttpGeneratorClient("http://bridge.test/", transport=httpx.MockTransport(handler))

        await client.send_to_generator("hello", False)

        assert seen == [("/generate", {"prompt": "hello", "raw_mode": False})]

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status_code, error_type",
        [
            (429, GeneratorTransportError),
            (503, GeneratorTransportError),
            (422, GeneratorRejectedError),
        ],
    )
    async def test_status_codes_are_classified(self, status_code, error_type):
        transport = httpx.MockTransport(lambda request: httpx.Response(status_code, text="x"))
        client = HttpGeneratorClient("http://bridge.test", transport=transport)

        with pytest.raises(error_type):
            await client.send_to_generator("hello", False)

    @pytest.mark.asyncio
    async def test_connection_errors_are_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        client = HttpGeneratorClient("http://bridge.test", transport=httpx.MockTransport(handler))

        with pytest.raises(GeneratorTransportError):
            await client.send_to_generator("hello", False)
