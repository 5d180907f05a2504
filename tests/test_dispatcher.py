"""Dispatcher tests: ordering, single-flight and worker/direct routing."""

import asyncio
from typing import Any, List, Tuple

import pytest
import pytest_asyncio

from lodestore.config import AppSettings, WorkerSettings
from lodestore.core.dispatcher import Dispatcher
from lodestore.core.messages import WorkerStatus
from lodestore.exceptions import LodestoreError, QueueFullError

from fakes import FakeExecutor, wait_for_status, wait_until

pytestmark = pytest.mark.asyncio


class Outcomes:
    """Collects handler invocations as (request name, kind, value)."""

    def __init__(self):
        self.events: List[Tuple[str, str, Any]] = []

    def handlers(self, name: str):
        def on_success(*args):
            self.events.append((name, "success", args[0] if args else None))

        def on_error(details):
            self.events.append((name, "error", details))

        return on_success, on_error

    def submit(self, dispatcher: Dispatcher, name: str, payload: Any = None):
        on_success, on_error = self.handlers(name)
        return dispatcher.submit(name, payload, on_success, on_error)

    @property
    def names(self) -> List[str]:
        return [name for name, _, _ in self.events]


@pytest.fixture
def outcomes():
    return Outcomes()


@pytest_asyncio.fixture
async def make_dispatcher(settings, channels):
    created = []

    def factory(app_settings: AppSettings = None, **kwargs):
        kwargs.setdefault("channel_factory", channels.factory)
        kwargs.setdefault("executor_factory", FakeExecutor)
        dispatcher = Dispatcher(app_settings or settings, **kwargs)
        created.append(dispatcher)
        return dispatcher

    yield factory

    for dispatcher in created:
        await dispatcher.close()


async def _registered(make_dispatcher) -> Dispatcher:
    dispatcher = make_dispatcher()
    dispatcher.start()
    await wait_for_status(dispatcher, WorkerStatus.REGISTERED)
    return dispatcher


async def test_requests_wait_for_probe_then_go_to_worker_in_order(make_dispatcher, channels, outcomes) -> None:
    dispatcher = make_dispatcher()
    for name in ("r1", "r2", "r3"):
        outcomes.submit(dispatcher, name)

    assert dispatcher.status is WorkerStatus.NOT_STARTED
    assert channels.channel.sent == []
    assert dispatcher.pending == 3

    await wait_for_status(dispatcher, WorkerStatus.REGISTERED)
    assert channels.channel.sent_names == ["r1"]

    channels.channel.reply("one")
    assert channels.channel.sent_names == ["r1", "r2"]
    channels.channel.reply("two")
    assert channels.channel.sent_names == ["r1", "r2", "r3"]
    channels.channel.reply("three")

    assert outcomes.events == [
        ("r1", "success", "one"),
        ("r2", "success", "two"),
        ("r3", "success", "three"),
    ]
    assert dispatcher.pending == 0
    assert FakeExecutor.instances == []


async def test_failed_probe_executes_directly(make_dispatcher, channels, outcomes) -> None:
    channels.fail_on_start = True
    dispatcher = make_dispatcher()
    dispatcher.start()
    assert dispatcher.status is WorkerStatus.FAILED

    outcomes.submit(dispatcher, "r1", {"from": "t"})
    await wait_until(lambda: outcomes.events)

    assert outcomes.events == [("r1", "success", {"name": "r1", "payload": {"from": "t"}})]
    assert channels.channel is None or channels.channel.sent == []
    assert [c["name"] for c in FakeExecutor.instances[0].calls] == ["r1"]


async def test_disabled_worker_executes_directly(make_dispatcher, direct_settings, channels, outcomes) -> None:
    dispatcher = make_dispatcher(direct_settings)

    outcomes.submit(dispatcher, "r1")
    await wait_until(lambda: outcomes.events)

    assert dispatcher.status is WorkerStatus.FAILED
    assert channels.channels == []
    assert outcomes.names == ["r1"]


async def test_second_request_waits_for_first_result(make_dispatcher, channels, outcomes) -> None:
    dispatcher = await _registered(make_dispatcher)

    outcomes.submit(dispatcher, "r1")
    assert dispatcher.in_flight
    outcomes.submit(dispatcher, "r2")

    assert channels.channel.sent_names == ["r1"]
    assert dispatcher.pending == 2

    channels.channel.reply()

    assert channels.channel.sent_names == ["r1", "r2"]
    assert outcomes.events == [("r1", "success", None)]


async def test_failure_result_routes_to_error_handler_and_advances(make_dispatcher, channels, outcomes) -> None:
    dispatcher = await _registered(make_dispatcher)
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    channels.channel.reply_error("table_not_exist", "no table t")

    name, kind, details = outcomes.events[0]
    assert (name, kind) == ("r1", "error")
    assert details.type == "table_not_exist"
    assert details.message == "no table t"
    assert channels.channel.sent_names == ["r1", "r2"]


async def test_fifo_and_single_flight_on_direct_path(make_dispatcher, direct_settings, outcomes) -> None:
    dispatcher = make_dispatcher(direct_settings, executor_factory=lambda: FakeExecutor(failing={"r3", "r7"}))
    names = [f"r{i}" for i in range(20)]
    for name in names:
        outcomes.submit(dispatcher, name)

    await wait_until(lambda: len(outcomes.events) == len(names))

    assert outcomes.names == names
    assert [kind for name, kind, _ in outcomes.events if name in ("r3", "r7")] == ["error", "error"]
    executor = FakeExecutor.instances[0]
    assert executor.max_active == 1
    assert [c["request_id"] for c in executor.calls] == sorted(c["request_id"] for c in executor.calls)


async def test_single_flight_under_gate(make_dispatcher, direct_settings, outcomes) -> None:
    gate = asyncio.Event()
    dispatcher = make_dispatcher(direct_settings, executor_factory=lambda: FakeExecutor(gate=gate))
    for name in ("a", "b", "c"):
        outcomes.submit(dispatcher, name)

    await asyncio.sleep(0.02)
    executor = FakeExecutor.instances[0]
    assert [c["name"] for c in executor.calls] == ["a"]
    assert outcomes.events == []

    gate.set()
    await wait_until(lambda: len(outcomes.events) == 3)
    assert outcomes.names == ["a", "b", "c"]
    assert executor.max_active == 1


async def test_each_handler_set_runs_exactly_once(make_dispatcher, channels, outcomes) -> None:
    dispatcher = await _registered(make_dispatcher)
    for i in range(6):
        outcomes.submit(dispatcher, f"r{i}")

    for i in range(6):
        if i % 2:
            channels.channel.reply_error("unknown", "odd")
        else:
            channels.channel.reply(i)
    # stray result after the queue drained
    channels.channel.reply("stray")

    assert outcomes.names == [f"r{i}" for i in range(6)]
    assert dispatcher.pending == 0


async def test_failure_signal_during_window_releases_queue_directly(make_dispatcher, channels, outcomes) -> None:
    dispatcher = make_dispatcher()
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    channels.channel.signal_failure()
    assert dispatcher.status is WorkerStatus.FAILED

    await wait_until(lambda: len(outcomes.events) == 2)
    assert outcomes.names == ["r1", "r2"]
    assert channels.channel.sent == []


async def test_late_failure_redispatches_in_flight_request_directly(make_dispatcher, channels, outcomes) -> None:
    dispatcher = await _registered(make_dispatcher)
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")
    assert channels.channel.sent_names == ["r1"]

    channels.channel.signal_failure()

    await wait_until(lambda: len(outcomes.events) == 2)
    assert dispatcher.status is WorkerStatus.FAILED
    assert outcomes.names == ["r1", "r2"]
    assert [c["name"] for c in FakeExecutor.instances[0].calls] == ["r1", "r2"]

    outcomes.submit(dispatcher, "r3")
    await wait_until(lambda: len(outcomes.events) == 3)
    assert dispatcher.status is WorkerStatus.FAILED
    assert channels.channel.sent_names == ["r1"]


async def test_reset_fails_in_flight_worker_request_and_reprobes(make_dispatcher, channels, outcomes) -> None:
    dispatcher = await _registered(make_dispatcher)
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    await dispatcher.reset()

    name, kind, details = outcomes.events[0]
    assert (name, kind, details.type) == ("r1", "error", "worker_terminated")
    assert channels.channels[0].closed
    assert dispatcher.status is WorkerStatus.NOT_STARTED

    await wait_for_status(dispatcher, WorkerStatus.REGISTERED)
    assert channels.channels[1].sent_names == ["r2"]
    channels.channels[1].reply("after reset")
    assert outcomes.events[1] == ("r2", "success", "after reset")


async def test_close_fails_pending_requests(make_dispatcher, channels, outcomes) -> None:
    dispatcher = await _registered(make_dispatcher)
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    await dispatcher.close()

    assert [(n, k, d.type) for n, k, d in outcomes.events] == [
        ("r1", "error", "engine_closed"),
        ("r2", "error", "engine_closed"),
    ]
    assert channels.channel.closed
    with pytest.raises(LodestoreError):
        outcomes.submit(dispatcher, "r3")


async def test_queue_bound_is_enforced(make_dispatcher, settings, outcomes) -> None:
    dispatcher = make_dispatcher(settings.model_copy(update={"max_pending": 2}))
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    with pytest.raises(QueueFullError):
        outcomes.submit(dispatcher, "r3")
    assert dispatcher.pending == 2


async def test_direct_executor_creation_failure_is_reported(make_dispatcher, direct_settings, outcomes) -> None:
    def broken_factory():
        raise RuntimeError("no storage driver")

    dispatcher = make_dispatcher(direct_settings, executor_factory=broken_factory)
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    await wait_until(lambda: len(outcomes.events) == 2)
    assert [(n, k) for n, k, _ in outcomes.events] == [("r1", "error"), ("r2", "error")]
    assert "no storage driver" in outcomes.events[0][2].message


async def test_request_ids_increase_monotonically(make_dispatcher, outcomes) -> None:
    dispatcher = make_dispatcher()
    first = outcomes.submit(dispatcher, "r1")
    second = outcomes.submit(dispatcher, "r2")
    assert second.request_id == first.request_id + 1


async def test_unexpected_channel_factory_error_falls_back_to_direct(make_dispatcher, outcomes) -> None:
    def exploding_factory(loop, on_result, on_failure_signal):
        raise RuntimeError("cannot spawn")

    dispatcher = make_dispatcher(channel_factory=exploding_factory)
    outcomes.submit(dispatcher, "r1")
    outcomes.submit(dispatcher, "r2")

    assert dispatcher.status is WorkerStatus.FAILED
    await wait_until(lambda: len(outcomes.events) == 2)
    assert [(n, k) for n, k, _ in outcomes.events] == [("r1", "success"), ("r2", "success")]


async def test_unexpected_channel_start_error_falls_back_to_direct(make_dispatcher, channels, outcomes) -> None:
    channels.start_error = OSError("thread limit reached")
    dispatcher = make_dispatcher()

    outcomes.submit(dispatcher, "r1")

    await wait_until(lambda: outcomes.events)
    assert dispatcher.status is WorkerStatus.FAILED
    assert outcomes.names == ["r1"]


async def test_reset_delivers_result_the_worker_finished_while_stopping(make_dispatcher, outcomes) -> None:
    dispatcher = make_dispatcher(channel_factory=None, executor_factory=lambda: FakeExecutor(delay=0.2))
    dispatcher.start()
    await wait_for_status(dispatcher, WorkerStatus.REGISTERED)
    outcomes.submit(dispatcher, "insert", {"into": "products"})
    await asyncio.sleep(0.05)

    await dispatcher.reset()

    assert outcomes.events == [("insert", "success", {"name": "insert", "payload": {"into": "products"}})]
    assert dispatcher.pending == 0


async def test_reset_reports_worker_terminated_after_join_timeout(make_dispatcher, settings, outcomes) -> None:
    impatient = settings.model_copy(update={"worker": WorkerSettings(probe_window=0.01, join_timeout=0.02)})
    dispatcher = make_dispatcher(impatient, channel_factory=None, executor_factory=lambda: FakeExecutor(delay=0.5))
    dispatcher.start()
    await wait_for_status(dispatcher, WorkerStatus.REGISTERED)
    outcomes.submit(dispatcher, "insert")
    await asyncio.sleep(0.02)

    await dispatcher.reset()

    name, kind, details = outcomes.events[0]
    assert (name, kind, details.type) == ("insert", "error", "worker_terminated")
    await asyncio.sleep(0.6)
    assert len(outcomes.events) == 1


async def test_reset_closes_idle_direct_executor(make_dispatcher, direct_settings, outcomes) -> None:
    dispatcher = make_dispatcher(direct_settings)
    outcomes.submit(dispatcher, "r1")
    await wait_until(lambda: len(outcomes.events) == 1)

    await dispatcher.reset()

    assert FakeExecutor.instances[0].closed
    outcomes.submit(dispatcher, "r2")
    await wait_until(lambda: len(outcomes.events) == 2)
    assert len(FakeExecutor.instances) == 2
    assert [c["name"] for c in FakeExecutor.instances[1].calls] == ["r2"]


async def test_rejected_request_does_not_consume_an_id(make_dispatcher, settings, channels, outcomes) -> None:
    dispatcher = make_dispatcher(settings.model_copy(update={"max_pending": 1}))
    dispatcher.start()
    await wait_for_status(dispatcher, WorkerStatus.REGISTERED)

    first = outcomes.submit(dispatcher, "r1")
    with pytest.raises(QueueFullError):
        outcomes.submit(dispatcher, "r2")
    channels.channel.reply()
    third = outcomes.submit(dispatcher, "r3")

    assert third.request_id == first.request_id + 1
