import anyio
import pytest

from mcpwire.shared.exceptions import (
    McpError,
    RequestCancelledError,
    RequestTimeoutError,
    TransportClosedError,
)
from mcpwire.shared.pending import PendingRequestTracker
from mcpwire.types import ErrorData, ProgressNotificationParams


@pytest.mark.anyio
async def test_ids_are_unique_and_increasing():
    tracker = PendingRequestTracker()
    ids = [tracker.register("ping")[0] for _ in range(5)]
    assert ids == [0, 1, 2, 3, 4]
    assert len(tracker) == 5


@pytest.mark.anyio
async def test_responses_in_reverse_order_reach_their_callers():
    tracker = PendingRequestTracker()
    entries = [tracker.register("tools/call") for _ in range(10)]
    results: dict[int, object] = {}

    async def wait_for(request_id, pending):
        results[request_id] = await pending.wait()

    async with anyio.create_task_group() as tg:
        for request_id, pending in entries:
            tg.start_soon(wait_for, request_id, pending)
        await anyio.wait_all_tasks_blocked()

        for request_id, _ in reversed(entries):
            assert tracker.resolve(request_id, {"answer": request_id})

    assert results == {request_id: {"answer": request_id} for request_id, _ in entries}
    assert len(tracker) == 0


@pytest.mark.anyio
async def test_unknown_ids_are_ignored():
    tracker = PendingRequestTracker()
    assert tracker.resolve(99, {}) is False
    assert tracker.reject(99, ErrorData(code=-32603, message="Internal error")) is False
    assert tracker.reject(None, ErrorData(code=-32700, message="Parse error")) is False
    assert tracker.cancel(99) is None


@pytest.mark.anyio
async def test_reject_raises_mcp_error():
    tracker = PendingRequestTracker()
    request_id, pending = tracker.register("tools/call")
    tracker.reject(request_id, ErrorData(code=-32602, message="Invalid params"))

    with pytest.raises(McpError) as exc_info:
        await pending.wait()
    assert exc_info.value.error.code == -32602


@pytest.mark.anyio
async def test_late_response_after_cancel_is_dropped():
    tracker = PendingRequestTracker()
    request_id, pending = tracker.register("tools/call")

    assert tracker.cancel(request_id, "user aborted") is pending
    assert tracker.resolve(request_id, {"late": True}) is False

    with pytest.raises(RequestCancelledError) as exc_info:
        await pending.wait()
    assert exc_info.value.reason == "user aborted"
    assert pending.done


@pytest.mark.anyio
async def test_string_echo_of_integer_id_is_matched():
    tracker = PendingRequestTracker()
    request_id, pending = tracker.register("ping")

    assert tracker.resolve(str(request_id), {})
    assert await pending.wait() == {}


@pytest.mark.anyio
async def test_timeout_expires_request():
    tracker = PendingRequestTracker()
    request_id, pending = tracker.register("tools/call", timeout=0.05)

    with pytest.raises(RequestTimeoutError) as exc_info:
        await pending.wait()
    assert exc_info.value.request_id == request_id
    assert request_id not in tracker


@pytest.mark.anyio
async def test_progress_extends_deadline_and_calls_back():
    tracker = PendingRequestTracker()
    updates: list[tuple[float, float | None, str | None]] = []

    async def on_progress(progress: float, total: float | None, message: str | None) -> None:
        updates.append((progress, total, message))

    request_id, pending = tracker.register("tools/call", timeout=0.3, progress_callback=on_progress)
    assert pending.progress_token == request_id
    first_deadline = pending.deadline

    await anyio.sleep(0.1)
    handled = await tracker.handle_progress(
        ProgressNotificationParams(progressToken=request_id, progress=1, total=2, message="half")
    )

    assert handled
    assert updates == [(1, 2, "half")]
    assert pending.deadline is not None and first_deadline is not None
    assert pending.deadline > first_deadline
    assert request_id in tracker


@pytest.mark.anyio
async def test_progress_without_reset_keeps_deadline():
    tracker = PendingRequestTracker(reset_timeout_on_progress=False)

    async def on_progress(progress: float, total: float | None, message: str | None) -> None:
        pass

    request_id, pending = tracker.register("tools/call", timeout=5, progress_callback=on_progress)
    deadline = pending.deadline
    await tracker.handle_progress(ProgressNotificationParams(progressToken=request_id, progress=1))
    assert pending.deadline == deadline


@pytest.mark.anyio
async def test_max_total_timeout_caps_progress_extension():
    tracker = PendingRequestTracker(max_total_timeout=1.0)

    async def on_progress(progress: float, total: float | None, message: str | None) -> None:
        pass

    request_id, pending = tracker.register("tools/call", timeout=10, progress_callback=on_progress)
    await tracker.handle_progress(ProgressNotificationParams(progressToken=request_id, progress=1))
    assert pending.deadline == pytest.approx(pending.created_at + 1.0)


@pytest.mark.anyio
async def test_progress_for_unknown_token_is_ignored():
    tracker = PendingRequestTracker()
    assert not await tracker.handle_progress(ProgressNotificationParams(progressToken="nope", progress=1))


@pytest.mark.anyio
async def test_failing_progress_callback_does_not_break_request():
    tracker = PendingRequestTracker()

    async def on_progress(progress: float, total: float | None, message: str | None) -> None:
        raise RuntimeError("boom")

    request_id, pending = tracker.register("tools/call", progress_callback=on_progress)
    assert await tracker.handle_progress(ProgressNotificationParams(progressToken=request_id, progress=1))
    tracker.resolve(request_id, {"ok": True})
    assert await pending.wait() == {"ok": True}


@pytest.mark.anyio
async def test_close_fails_everything_pending():
    tracker = PendingRequestTracker()
    _, first = tracker.register("ping")
    _, second = tracker.register("tools/list")

    tracker.close()

    for pending in (first, second):
        with pytest.raises(TransportClosedError):
            await pending.wait()
    with pytest.raises(TransportClosedError):
        tracker.register("ping")
