import asyncio

import pytest
from pydantic import ValidationError

from fakes import FakeHttp, wait_until
from relayflow.channels import EventChannel
from relayflow.errors import APIError, StreamDisconnectedError, TaskCancelledError, TaskFailedError, TransportError
from relayflow.models import Task, TaskStatus
from relayflow.runs import RunCoordinator, RunOptions

STREAM = "/tasks/t1/stream"


class CountingChannel(EventChannel):
    instances: list["CountingChannel"] = []

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.stop_calls = 0
        CountingChannel.instances.append(self)

    def stop(self) -> None:
        self.stop_calls += 1
        super().stop()


@pytest.fixture(autouse=True)
def _reset_instances():
    CountingChannel.instances.clear()
    yield
    CountingChannel.instances.clear()


def _http() -> FakeHttp:
    http = FakeHttp()
    http.on("post", "/apps/run", {"id": "t1", "status": 1, "internal_ref": "x"})
    return http


def _options(**kwargs) -> RunOptions:
    kwargs.setdefault("reconnect_delay_s", 0)
    return RunOptions(**kwargs)


@pytest.mark.asyncio
async def test_run_resolves_on_completed_and_stops_channel_once() -> None:
    http = _http()
    partials: list[tuple[TaskStatus, list[str]]] = []
    fulls: list[Task] = []
    runner = RunCoordinator(http, channel_factory=CountingChannel)

    pending = asyncio.create_task(
        runner.run(
            {"app": "acme/echo", "input": {"text": "hi"}},
            _options(
                on_update=fulls.append,
                on_partial_update=lambda task, fields: partials.append((task.status, fields)),
            ),
        )
    )
    await wait_until(lambda: http.streams.get(STREAM))
    source = http.stream(STREAM)
    source.push({"data": {"id": "t1", "status": 7}, "fields": ["status"]})
    source.push({"id": "t1", "status": 9, "output": {"r": 1}})
    task = await asyncio.wait_for(pending, timeout=1)

    assert task.status is TaskStatus.COMPLETED
    assert task.output == {"r": 1}
    assert partials == [(TaskStatus.RUNNING, ["status"])]
    assert [update.status for update in fulls] == [TaskStatus.COMPLETED]
    assert CountingChannel.instances[0].stop_calls == 1
    assert http.requests_to("post", "/apps/run") == [{"app": "acme/echo", "input": {"text": "hi"}}]


@pytest.mark.asyncio
async def test_run_without_wait_returns_stripped_snapshot() -> None:
    http = _http()
    runner = RunCoordinator(http)

    task = await runner.run({"app": "acme/echo", "input": {}}, _options(wait=False))

    assert task.id == "t1"
    assert task.status is TaskStatus.RECEIVED
    assert "internal_ref" not in task.model_dump()
    assert http.streams == {}


@pytest.mark.asyncio
async def test_failed_task_raises_with_server_error() -> None:
    http = _http()
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options()))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).push({"id": "t1", "status": 10, "error": "out of memory"})

    with pytest.raises(TaskFailedError, match="out of memory") as excinfo:
        await asyncio.wait_for(pending, timeout=1)
    assert excinfo.value.task is not None
    assert excinfo.value.task.status is TaskStatus.FAILED


@pytest.mark.asyncio
async def test_failed_task_without_error_uses_generic_message() -> None:
    http = _http()
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options()))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).push({"id": "t1", "status": 10})

    with pytest.raises(TaskFailedError, match="task failed"):
        await asyncio.wait_for(pending, timeout=1)


@pytest.mark.asyncio
async def test_failed_task_with_structured_error_raises() -> None:
    http = _http()
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options()))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).push({"id": "t1", "status": 10, "error": {"message": "boom"}})

    with pytest.raises(TaskFailedError, match="boom") as excinfo:
        await asyncio.wait_for(pending, timeout=1)
    assert excinfo.value.task.error == {"message": "boom"}


@pytest.mark.asyncio
async def test_completed_task_with_numeric_timestamp_resolves() -> None:
    http = _http()
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options()))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).push({"id": "t1", "status": 9, "updated_at": 1700000000, "output": "ok"})
    task = await asyncio.wait_for(pending, timeout=1)

    assert task.status is TaskStatus.COMPLETED
    assert task.updated_at == 1700000000
    assert task.output == "ok"


@pytest.mark.asyncio
async def test_terminal_update_settles_even_when_a_field_is_malformed() -> None:
    http = _http()
    errors: list[Exception] = []
    runner = RunCoordinator(http, channel_factory=CountingChannel)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options(on_error=errors.append)))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).push({"id": "t1", "status": 9, "session_id": {"bad": 1}, "output": {"r": 2}})
    task = await asyncio.wait_for(pending, timeout=1)

    assert task.status is TaskStatus.COMPLETED
    assert task.output == {"r": 2}
    assert task.session_id is None
    assert len(errors) == 1 and isinstance(errors[0], ValidationError)
    assert CountingChannel.instances[0].stop_calls == 1


@pytest.mark.asyncio
async def test_malformed_non_terminal_update_keeps_waiting() -> None:
    http = _http()
    errors: list[Exception] = []
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options(on_error=errors.append)))
    await wait_until(lambda: http.streams.get(STREAM))
    source = http.stream(STREAM)
    source.push({"id": "t1", "status": 7, "session_id": ["x"]})
    await wait_until(lambda: errors)
    assert not pending.done()

    source.push({"id": "t1", "status": 9})
    task = await asyncio.wait_for(pending, timeout=1)
    assert task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancelled_task_raises() -> None:
    http = _http()
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options()))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).push({"data": {"id": "t1", "status": 11}, "fields": ["status"]})

    with pytest.raises(TaskCancelledError, match="task cancelled"):
        await asyncio.wait_for(pending, timeout=1)


@pytest.mark.asyncio
async def test_updates_after_settlement_are_ignored() -> None:
    http = _http()
    fulls: list[Task] = []
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options(on_update=fulls.append)))
    await wait_until(lambda: http.streams.get(STREAM))
    source = http.stream(STREAM)
    source.push({"id": "t1", "status": 9})
    source.push({"id": "t1", "status": 10})
    await asyncio.wait_for(pending, timeout=1)
    await asyncio.sleep(0.01)

    assert [update.status for update in fulls] == [TaskStatus.COMPLETED]


@pytest.mark.asyncio
async def test_stream_budget_exhaustion_raises_disconnected() -> None:
    http = _http()
    http.stream_error = TransportError("connection refused")
    errors: list[Exception] = []
    runner = RunCoordinator(http)

    with pytest.raises(StreamDisconnectedError):
        await asyncio.wait_for(
            runner.run({"app": "a", "input": {}}, _options(max_reconnects=2, on_error=errors.append)),
            timeout=1,
        )
    assert len(errors) == 3


@pytest.mark.asyncio
async def test_transient_stream_errors_only_reach_on_error() -> None:
    http = _http()
    errors: list[Exception] = []
    runner = RunCoordinator(http)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options(on_error=errors.append)))
    await wait_until(lambda: http.streams.get(STREAM))
    http.stream(STREAM).fail()
    await wait_until(lambda: len(http.streams[STREAM]) == 2)
    http.stream(STREAM).push({"id": "t1", "status": 9})
    task = await asyncio.wait_for(pending, timeout=1)

    assert task.status is TaskStatus.COMPLETED
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_submit_failure_propagates_without_opening_a_stream() -> None:
    http = FakeHttp()
    http.on("post", "/apps/run", APIError(400, "bad input"))
    runner = RunCoordinator(http)

    with pytest.raises(APIError, match="bad input"):
        await runner.run({"app": "a", "input": {}}, _options())
    assert http.streams == {}


@pytest.mark.asyncio
async def test_cancelling_the_waiter_stops_the_channel() -> None:
    http = _http()
    runner = RunCoordinator(http, channel_factory=CountingChannel)

    pending = asyncio.create_task(runner.run({"app": "a", "input": {}}, _options()))
    await wait_until(lambda: http.streams.get(STREAM))
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    assert CountingChannel.instances[0].stopped
    await wait_until(lambda: http.stream(STREAM).closed)
