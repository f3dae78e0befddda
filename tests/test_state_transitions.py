"""State transition tests for GenerationJob model.

Tests focus on validating the job lifecycle state machine:
- Valid transitions between states, including the retry loop
- Invalid transitions are rejected with clear error messages
- Failed state is reachable from any non-terminal state
"""

import pytest

from genledger.models.job import GenerationJob, InvalidStateTransition, JobStatus


def test_valid_state_transitions():
    """Test the retry loop from idle through a moderation back to completed."""
    job = GenerationJob(prompt="a fox in the snow")
    assert job.status == JobStatus.IDLE
    assert job.original_prompt == "a fox in the snow"

    # Transition: idle → generating
    job.mark_generating()
    assert job.status == JobStatus.GENERATING

    # Transition: generating → moderated
    record = job.mark_moderated("policy")
    assert job.status == JobStatus.MODERATED
    assert job.retry_count == 1
    assert record.attempt == 1
    assert record.prompt == "a fox in the snow"

    # Transition: moderated → retrying
    job.mark_retrying("artistic a fox in the snow")
    assert job.status == JobStatus.RETRYING
    assert job.prompt == "artistic a fox in the snow"
    assert job.original_prompt == "a fox in the snow"

    # Transition: retrying → generating → completed
    job.mark_generating()
    job.mark_completed()
    assert job.status == JobStatus.COMPLETED
    assert job.is_terminal


def test_invalid_state_transition_raises_exception():
    """Cannot complete a job that never started generating."""
    job = GenerationJob(prompt="test")

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.mark_completed()

    assert "Cannot mark completed from idle" in str(exc_info.value)
    assert "generating state" in str(exc_info.value)
    assert job.status == JobStatus.IDLE


def test_retrying_requires_moderation():
    job = GenerationJob(prompt="test")
    job.mark_generating()

    with pytest.raises(InvalidStateTransition):
        job.mark_retrying("softer test")


def test_retrying_requires_prompt():
    job = GenerationJob(prompt="test")
    job.mark_generating()
    job.mark_moderated(None)

    with pytest.raises(ValueError):
        job.mark_retrying("")


def test_each_moderation_counts_against_the_budget():
    """A moderated retry increments the same counter as the first moderation."""
    job = GenerationJob(prompt="test")

    for expected in (1, 2, 3):
        job.mark_generating()
        job.mark_moderated("blocked")
        assert job.retry_count == expected
        if expected < 3:
            job.mark_retrying(f"retry {expected}")

    assert [r.attempt for r in job.retry_history] == [1, 2, 3]
    assert [r.prompt for r in job.retry_history] == ["test", "retry 1", "retry 2"]


@pytest.mark.parametrize(
    "setup",
    [
        [],
        ["mark_generating"],
        ["mark_generating", "mark_moderated"],
    ],
)
def test_failed_reachable_from_non_terminal_states(setup):
    job = GenerationJob(prompt="test")
    for step in setup:
        if step == "mark_moderated":
            job.mark_moderated("blocked")
        else:
            getattr(job, step)()

    job.mark_failed("GENERATION_FAILED")

    assert job.status == JobStatus.FAILED
    assert job.failure_reason == "GENERATION_FAILED"


def test_failed_is_terminal():
    job = GenerationJob(prompt="test")
    job.mark_failed("SUBMIT_FAILED")

    with pytest.raises(InvalidStateTransition) as exc_info:
        job.mark_failed("again")

    assert "terminal state failed" in str(exc_info.value)
    assert job.failure_reason == "SUBMIT_FAILED"


class TestFallback:
    def test_fallback_resets_budget_and_prompt(self):
        job = GenerationJob(prompt="original", use_spicy=True)
        job.mark_generating()
        job.mark_moderated("blocked")
        job.mark_retrying("softened original")
        job.mark_generating()
        job.mark_moderated("blocked")

        job.mark_fallback()

        assert job.status == JobStatus.RETRYING
        assert job.use_spicy is False
        assert job.fallback_used is True
        assert job.retry_count == 0
        assert job.prompt == "original"

    def test_fallback_only_once(self):
        job = GenerationJob(prompt="original", use_spicy=True)
        job.mark_generating()
        job.mark_moderated("blocked")
        job.mark_fallback()
        job.mark_generating()
        job.mark_moderated("blocked")

        with pytest.raises(InvalidStateTransition):
            job.mark_fallback()

    def test_fallback_requires_elevated_mode(self):
        job = GenerationJob(prompt="original")
        job.mark_generating()
        job.mark_moderated("blocked")

        with pytest.raises(InvalidStateTransition) as exc_info:
            job.mark_fallback()

        assert "use_spicy=False" in str(exc_info.value)
