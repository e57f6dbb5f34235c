import time
from types import SimpleNamespace

import pytest
from celery.exceptions import Retry

from reelforge.services.dispatcher import Lane
from reelforge.services.errors import FetchError, TerminalJobError
from reelforge.services.outcome import RetryableFailure, Success, TerminalFailure
from reelforge.worker.tasks import _execute

OPTIONS = {"attempts": 3, "backoff": {"type": "exponential", "initial_delay_ms": 3000}}


class FakeTask:
    """Bound-task stand-in: exposes request.retries and records retry countdowns."""

    def __init__(self, retries: int = 0):
        self.request = SimpleNamespace(retries=retries, id="celery-1")
        self.countdowns: list[float] = []

    def retry(self, *, countdown, max_retries):
        self.countdowns.append(countdown)
        self.max_retries = max_retries
        return Retry(when=countdown)


class FailRecorder:
    def __init__(self):
        self.calls: list[tuple[str, str, str]] = []

    async def __call__(self, session, entity_id, code, message):
        self.calls.append((entity_id, code, message))
        return True


def _returning(outcome):
    async def process(session):
        return outcome
    return process


def _raising(exc):
    async def process(session):
        raise exc
    return process


def test_success_returns_result():
    fail = FailRecorder()
    result = _execute(
        FakeTask(), Lane.intake, "v1", OPTIONS, _returning(Success({"video_key": "k"})), fail,
    )
    assert result == {"outcome": "success", "skipped": False, "video_key": "k"}
    assert fail.calls == []


@pytest.mark.parametrize("retries,countdown", [(0, 3.0), (1, 6.0)])
def test_retryable_failure_backs_off(retries, countdown):
    task = FakeTask(retries=retries)
    fail = FailRecorder()

    with pytest.raises(Retry):
        _execute(task, Lane.intake, "v1", OPTIONS, _returning(RetryableFailure("RATE_LIMITED", "slow down")), fail)

    assert task.countdowns == [countdown]
    assert task.max_retries == 2
    assert fail.calls == []


def test_last_attempt_fails_entity_with_final_marker():
    task = FakeTask(retries=2)
    fail = FailRecorder()

    with pytest.raises(TerminalJobError) as exc_info:
        _execute(task, Lane.intake, "v1", OPTIONS, _returning(RetryableFailure("RATE_LIMITED", "slow down")), fail)

    assert exc_info.value.code == "RATE_LIMITED"
    assert task.countdowns == []
    assert fail.calls == [("v1", "RATE_LIMITED", "[FINAL] RATE_LIMITED: slow down")]


def test_single_attempt_lane_never_retries():
    task = FakeTask()
    fail = FailRecorder()
    options = {"attempts": 1, "backoff": {"initial_delay_ms": 0}}

    with pytest.raises(TerminalJobError):
        _execute(task, Lane.extraction, "t1", options, _returning(RetryableFailure("TIMEOUT", "model timed out")), fail)

    assert task.countdowns == []
    assert fail.calls[0][2].startswith("[FINAL] TIMEOUT")


def test_terminal_failure_is_not_written_twice():
    task = FakeTask()
    fail = FailRecorder()

    with pytest.raises(TerminalJobError) as exc_info:
        _execute(task, Lane.intake, "v1", OPTIONS, _returning(TerminalFailure("PRIVATE_VIDEO", "private")), fail)

    assert exc_info.value.code == "PRIVATE_VIDEO"
    assert task.countdowns == []
    assert fail.calls == []


def test_unhandled_exception_is_classified():
    fail = FailRecorder()

    with pytest.raises(TerminalJobError) as exc_info:
        _execute(FakeTask(), Lane.render, "r1", OPTIONS, _raising(ValueError("boom")), fail)

    assert exc_info.value.code == "UNKNOWN_ERROR"
    assert fail.calls == [("r1", "UNKNOWN_ERROR", "boom")]


def test_unhandled_transient_exception_is_retried():
    task = FakeTask()
    fail = FailRecorder()

    with pytest.raises(Retry):
        _execute(task, Lane.intake, "v1", OPTIONS, _raising(FetchError("NETWORK_ERROR", "connection reset")), fail)

    assert task.countdowns == [3.0]
    assert fail.calls == []


def test_unknown_outcome_is_an_error():
    fail = FailRecorder()

    with pytest.raises(TypeError, match="unexpected job outcome"):
        _execute(FakeTask(), Lane.intake, "v1", OPTIONS, _returning(None), fail)

    assert fail.calls == []


def test_render_slot_is_held_with_render_ttl(fake_redis):
    seen = []

    async def process(session):
        (expiry,) = fake_redis.zsets["sem:render"].values()
        seen.append(expiry - time.time())
        return Success({})

    _execute(FakeTask(), Lane.render, "r1", OPTIONS, process, FailRecorder(), semaphore=("render", 1, 900))

    assert 899 <= seen[0] <= 900
    assert fake_redis.zsets["sem:render"] == {}
    assert fake_redis.closed
