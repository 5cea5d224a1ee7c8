"""BackoffExecutor 重試行為測試。"""
from __future__ import annotations

import asyncio

import pytest

from app.pipeline.backoff import BackoffExecutor, RetryPolicy, is_transient_error
from app.pipeline.cancellation import CancellationToken
from app.pipeline.errors import RemoteServiceError, TaskCancelledError


def _failing_operation(failures: int, error_factory=lambda: RemoteServiceError("boom")):
    calls = {"count": 0}

    async def operation() -> str:
        calls["count"] += 1
        if calls["count"] <= failures:
            raise error_factory()
        return "ok"

    return operation, calls


def test_delay_doubles_per_attempt() -> None:
    policy = RetryPolicy()

    assert policy.max_attempts == 3
    assert [policy.delay_ms(attempt) for attempt in range(3)] == [1000, 2000, 4000]


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 2])
async def test_succeeds_after_transient_failures(log_sink, repository, failures: int) -> None:
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0), log_sink)
    operation, calls = _failing_operation(failures)

    result = await executor.run(operation, name="Upload file", task_id="task-1", category="network")

    assert result == "ok"
    assert calls["count"] == failures + 1
    entries = repository.list_entries("task-1") or []
    assert len(entries) == failures


@pytest.mark.asyncio
async def test_exhausted_attempts_raise_last_error_unchanged(log_sink, repository) -> None:
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0), log_sink)
    raised = []

    async def operation() -> None:
        error = RemoteServiceError(f"boom {len(raised)}", status_code=503)
        raised.append(error)
        raise error

    with pytest.raises(RemoteServiceError) as exc_info:
        await executor.run(operation, name="Poll status", task_id="task-1", category="network")

    assert len(raised) == 3
    assert exc_info.value is raised[-1]
    messages = [entry.message for entry in repository.list_entries("task-1") or []]
    assert messages == [
        "Poll status failed (attempt 1/3), retrying in 0ms...",
        "Poll status failed (attempt 2/3), retrying in 0ms...",
    ]


@pytest.mark.asyncio
async def test_waits_one_then_two_seconds(monkeypatch, log_sink) -> None:
    delays = []
    real_sleep = asyncio.sleep

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)
        await real_sleep(0)

    monkeypatch.setattr(asyncio, "sleep", fake_sleep)
    executor = BackoffExecutor(RetryPolicy(), log_sink)
    operation, _ = _failing_operation(5)

    with pytest.raises(RemoteServiceError):
        await executor.run(operation, name="Upload file", task_id="task-1", category="network")

    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_classifier_stops_on_permanent_errors(log_sink) -> None:
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0, retryable=is_transient_error), log_sink)
    operation, calls = _failing_operation(5, lambda: RemoteServiceError("nope", status_code=404))

    with pytest.raises(RemoteServiceError):
        await executor.run(operation, name="Upload file", task_id="task-1", category="network")

    assert calls["count"] == 1


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [(None, True), (400, False), (401, False), (404, False), (408, True), (429, True), (500, True), (503, True)],
)
def test_is_transient_error(status_code, expected) -> None:
    assert is_transient_error(RemoteServiceError("x", status_code=status_code)) is expected


@pytest.mark.asyncio
async def test_cancelled_token_prevents_first_attempt(log_sink) -> None:
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=0), log_sink)
    token = CancellationToken("task-1")
    token.cancel("stop")
    operation, calls = _failing_operation(0)

    with pytest.raises(TaskCancelledError):
        await executor.run(operation, name="Upload file", task_id="task-1", category="network", token=token)

    assert calls["count"] == 0


@pytest.mark.asyncio
async def test_cancel_during_backoff_stops_retrying(log_sink) -> None:
    executor = BackoffExecutor(RetryPolicy(initial_delay_ms=10_000), log_sink)
    token = CancellationToken("task-1")
    calls = {"count": 0}

    async def operation() -> None:
        calls["count"] += 1
        asyncio.get_running_loop().call_later(0.01, token.cancel, "user request")
        raise RemoteServiceError("boom")

    with pytest.raises(TaskCancelledError) as exc_info:
        await asyncio.wait_for(
            executor.run(operation, name="Upload file", task_id="task-1", category="network", token=token),
            timeout=2,
        )

    assert calls["count"] == 1
    assert exc_info.value.reason == "user request"
