"""Tests for EventBus emission."""

import asyncio
import logging
import re
from types import SimpleNamespace

import pytest

from groupevents import (
    OFF,
    EmitStatus,
    EmitterOptions,
    EventBus,
    GroupTimeout,
    InvalidArgument,
    ListenerFailed,
    ResultItem,
    current_target,
)


def recorder():
    """Return a list of error-sink calls and the sink appending to it."""
    calls = []

    def on_error(context_error, details, original):
        calls.append((context_error, details, original))

    return calls, on_error


def test_event_bus_on_invalid_callback():
    """Test that on() raises InvalidArgument (a TypeError) for non-callable callbacks."""
    bus = EventBus()
    with pytest.raises(TypeError, match="No listener function passed"):
        bus.on("event", "not_callable")
    with pytest.raises(InvalidArgument):
        bus.on(42, lambda: None)


@pytest.mark.asyncio
async def test_emit_rejects_non_string_event():
    """Test that emit() raises synchronously for a bad event."""
    bus = EventBus()
    with pytest.raises(InvalidArgument):
        bus.emit(42)
    with pytest.raises(InvalidArgument):
        bus.emit_event(re.compile("x"))


@pytest.mark.asyncio
async def test_listeners_never_run_inside_the_emitting_call():
    """Test that code after emit() runs before any listener body."""
    bus = EventBus()
    order = []

    bus.on("e", lambda: order.append("listener"))

    pending = bus.emit("e")
    order.append("caller")
    await pending

    assert order == ["caller", "listener"]


@pytest.mark.asyncio
async def test_groups_run_in_order():
    """Test that a lower group finishes before a higher group starts."""
    trace = []

    def progress(event, status, index, position):
        if index is not None:
            trace.append((index, status[index][position].value))

    bus = EventBus(on_progress=progress)

    async def l0():
        await asyncio.sleep(0.01)

    def l1():
        pass

    bus.on("go", l1, index=1)
    bus.on("go", l0, index=0)

    results = await bus.emit("go")

    assert len(results) == 2
    assert trace.index((0, "finished")) < trace.index((1, "executing"))
    assert [r.group for r in results] == [0, 1]


@pytest.mark.asyncio
async def test_listeners_in_a_group_run_concurrently():
    """Test that listeners sharing an index are not awaited one by one."""
    bus = EventBus()
    first_started = asyncio.Event()
    out = []

    async def waits_for_second():
        await first_started.wait()
        out.append("first")

    async def releases_first():
        first_started.set()
        out.append("second")

    bus.on("e", waits_for_second)
    bus.on("e", releases_first)

    results = await asyncio.wait_for(bus.emit("e"), 1)

    assert out == ["second", "first"]
    # completion order, not call order
    assert [r.position for r in results] == [1, 0]


@pytest.mark.asyncio
async def test_negative_and_large_indexes_sort_numerically():
    """Test that group order is numeric, not lexical."""
    bus = EventBus()
    out = []

    bus.on("e", lambda: out.append(10), index=10)
    bus.on("e", lambda: out.append(2), index=2)
    bus.on("e", lambda: out.append(-1), index=-1)

    await bus.emit("e")
    assert out == [-1, 2, 10]


@pytest.mark.asyncio
async def test_duplicate_callbacks_collapse_by_default():
    """Test that a callback registered twice runs once unless duplicates are allowed."""
    calls = []

    def cb():
        calls.append(1)

    bus = EventBus()
    bus.on("e", cb)
    bus.on("e", cb)
    assert len(await bus.emit("e")) == 1
    assert calls == [1]

    calls.clear()
    bus = EventBus(allow_duplicates=True)
    bus.on("e", cb)
    bus.on("e", cb)
    assert len(await bus.emit("e")) == 2
    assert calls == [1, 1]


@pytest.mark.asyncio
async def test_once_listener_reemitting_its_event():
    """Test that a once listener re-emitting its own event does not run again."""
    bus = EventBus()
    calls = []
    inner = []

    def cb():
        calls.append(1)
        inner.append(bus.emit("x"))

    bus.once("x", cb)
    await bus.emit("x")
    await asyncio.gather(*inner)

    assert calls == [1]
    assert bus.get_listeners("x") == []


@pytest.mark.asyncio
async def test_listener_failure_is_isolated():
    """Test that a failing listener is reported once and recorded, not raised."""
    calls, on_error = recorder()
    bus = EventBus(on_error=on_error)
    boom = RuntimeError("boom")

    def failing(value):
        raise boom

    bus.on("y", failing)
    bus.on("y", lambda value: value * 2)

    results = await bus.emit("y", 21)

    assert ResultItem(False, boom, 0, 0) in results
    assert ResultItem(True, 42, 0, 1) in results
    assert len(calls) == 1
    context_error, details, original = calls[0]
    assert isinstance(context_error, ListenerFailed)
    assert context_error.event == "y"
    assert original is boom
    assert details["args"] == (21,)


@pytest.mark.asyncio
async def test_failing_async_listener_is_isolated():
    """Test that a rejecting coroutine is handled like a raising function."""
    calls, on_error = recorder()
    bus = EventBus(on_error=on_error)

    async def failing():
        await asyncio.sleep(0)
        raise ValueError("test error")

    bus.on("evt", failing)
    results = await bus.emit("evt")

    assert results[0].success is False
    assert isinstance(results[0].value, ValueError)
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_default_error_sink_logs(caplog):
    """Test that without on_error, failures are logged with the original traceback."""
    bus = EventBus()

    def failing():
        raise ValueError("logged")

    bus.on("evt", failing)
    with caplog.at_level("ERROR", logger="groupevents"):
        await bus.emit("evt")

    record = next(r for r in caplog.records if "evt" in r.getMessage())
    assert record.exc_info[1].args == ("logged",)


@pytest.mark.asyncio
async def test_raising_error_sink_does_not_break_emission():
    """Test that an error sink which raises is contained."""

    def bad_sink(context_error, details, original):
        raise RuntimeError("sink failed")

    bus = EventBus(on_error=bad_sink)
    bus.on("evt", lambda: 1 / 0)
    bus.on("evt", lambda: "ok", index=1)

    results = await bus.emit("evt")
    assert [r.success for r in results] == [False, True]


@pytest.mark.asyncio
async def test_progress_errors_are_swallowed():
    """Test that an on_progress callback which raises does not affect the emission."""

    def progress(*args):
        raise RuntimeError("progress failed")

    bus = EventBus(on_progress=progress)
    bus.on("evt", lambda: "ok")

    assert await bus.emit("evt") == [ResultItem(True, "ok", 0, 0)]


@pytest.mark.asyncio
async def test_off_return_value_removes_listener():
    """Test that returning OFF unsubscribes the listener after it ran."""
    bus = EventBus()
    calls = []

    def cb():
        calls.append(1)
        return OFF

    bus.on("evt", cb)
    results = await bus.emit("evt")
    await bus.emit("evt")

    assert calls == [1]
    assert results == [ResultItem(True, "off", 0, 0)]


@pytest.mark.asyncio
async def test_pattern_listener_gets_event_name():
    """Test that pattern listeners receive the concrete event name first."""
    bus = EventBus()
    seen = []

    bus.on(re.compile(r"^user\."), lambda event, uid: seen.append((event, uid)))
    bus.on("user.created", lambda uid: seen.append(("exact", uid)))

    await bus.emit("user.created", 7)
    await bus.emit("user.deleted", 8)

    assert ("exact", 7) in seen
    assert ("user.created", 7) in seen
    assert ("user.deleted", 8) in seen


@pytest.mark.asyncio
async def test_on_all_listener():
    """Test that on_all() sees every event."""
    bus = EventBus()
    seen = []

    bus.on_all(seen.append)
    await bus.emit("a")
    await bus.emit("b")

    assert seen == ["a", "b"]


@pytest.mark.asyncio
async def test_catch_all_only_runs_for_unhandled_events():
    """Test the catch-all listener and that setting it again replaces it."""
    bus = EventBus()
    first, second = [], []

    bus.on("handled", lambda: None)
    bus.on_unhandled(lambda event, *args: first.append((event, args)))

    await bus.emit("handled")
    await bus.emit("nobody", 1)
    assert first == [("nobody", (1,))]

    bus.on_unhandled(lambda event, *args: second.append(event))
    await bus.emit("nobody")
    assert first == [("nobody", (1,))]
    assert second == ["nobody"]

    bus.on_unhandled(False)
    assert await bus.emit("nobody") == []


@pytest.mark.asyncio
async def test_interceptor_cancels_emission():
    """Test that an interceptor returning a non-list cancels the emission."""
    bus = EventBus()
    calls = []
    progress = []

    bus.on("x", lambda: calls.append(1))
    bus.intercept_event("x", lambda *args: None)

    status = bus.emit_event("x", (), {"on_progress": lambda *args: progress.append(args)})
    assert isinstance(status, EmitStatus)
    assert status.intercepted is True
    assert await status == []

    await asyncio.sleep(0)
    assert calls == []
    assert len(progress) == 1
    assert bus.already_emitted("x") is False


@pytest.mark.asyncio
async def test_interceptor_replaces_arguments():
    """Test that an interceptor returning a list replaces the arguments."""
    bus = EventBus()
    seen = []

    bus.on("x", lambda value: seen.append(value))
    bus.intercept_event("x", lambda value: [value + 1])
    await bus.emit("x", 1)

    bus.stop_intercepting("x")
    await bus.emit("x", 1)

    assert seen == [2, 1]


@pytest.mark.asyncio
async def test_group_timeout_moves_on():
    """Test that a slow group is abandoned but its result still lands in the status."""
    calls, on_error = recorder()
    bus = EventBus(group_timeout=0.01, on_error=on_error)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return "slow"

    bus.on("t", slow, index=0)
    bus.on("t", lambda: "fast", index=1)

    status = bus.emit_event("t")
    results = await asyncio.wait_for(status, 1)

    assert [r.value for r in results] == ["fast"]
    assert len(calls) == 1
    assert isinstance(calls[0][0], GroupTimeout)
    assert calls[0][0].group == 0
    assert status.done is False

    release.set()
    await asyncio.sleep(0.01)

    assert status.done is True
    assert len(status.results) == 2
    assert len(results) == 1


@pytest.mark.asyncio
async def test_last_group_never_times_out():
    """Test that group_timeout does not apply to the final group."""
    calls, on_error = recorder()
    bus = EventBus(group_timeout=0.01, on_error=on_error)

    async def slow():
        await asyncio.sleep(0.03)
        return "slow"

    bus.on("t", slow)
    results = await bus.emit("t")

    assert results == [ResultItem(True, "slow", 0, 0)]
    assert calls == []


@pytest.mark.asyncio
async def test_group_delay():
    """Test that group_delay pauses between groups."""
    bus = EventBus(group_delay=0.05)
    loop = asyncio.get_running_loop()
    times = {}

    bus.on("d", lambda: times.setdefault(0, loop.time()), index=0)
    bus.on("d", lambda: times.setdefault(1, loop.time()), index=1)
    await bus.emit("d")

    assert times[1] - times[0] >= 0.04


@pytest.mark.asyncio
async def test_return_status_option():
    """Test that return_status=False hands back a plain future of results."""
    bus = EventBus(return_status=False)
    bus.on("e", lambda: 1)

    future = bus.emit_event("e")
    assert not isinstance(future, EmitStatus)
    assert await future == [ResultItem(True, 1, 0, 0)]

    status = bus.emit_event("e", (), {"return_status": True})
    assert isinstance(status, EmitStatus)
    await status
    assert status.done


@pytest.mark.asyncio
async def test_exclude_option():
    """Test that excluded listeners are skipped for one emission."""
    bus = EventBus()
    out = []

    def a():
        out.append("a")

    def b():
        out.append("b")

    listener_b = bus.on("e", b)
    bus.on("e", a)

    await bus.emit_event("e", (), {"exclude": [listener_b]})
    assert out == ["a"]

    out.clear()
    await bus.emit_event("e", (), {"exclude": a})
    assert out == ["b"]


@pytest.mark.asyncio
async def test_precomputed_listeners():
    """Test that a grouping computed ahead of time fixes the listener set."""
    bus = EventBus()
    out = []

    bus.on("e", lambda: out.append("early"))
    grouped = bus.listeners_for_emit("e")
    bus.on("e", lambda: out.append("late"))

    await bus.emit_event("e", (), {"listeners": grouped})
    assert out == ["early"]


@pytest.mark.asyncio
async def test_listener_added_during_emission_is_not_run():
    """Test that registering during an emission does not change its listener set."""
    bus = EventBus()
    out = []

    def register():
        bus.on("e", lambda: out.append("late"), index=1)

    bus.on("e", register)
    await bus.emit("e")
    assert out == []

    await bus.emit("e")
    assert out == ["late"]


@pytest.mark.asyncio
async def test_emit_as():
    """Test the receiver published to callbacks."""
    target = object()
    seen = []

    def cb():
        seen.append(current_target())

    bus = EventBus()
    bus.on("e", cb)
    await bus.emit("e")
    await bus.emit_event("e", (), {"emit_as": target})
    await bus.emit_event("e", (), {"emit_as": "empty"})

    assert seen[0] is bus
    assert seen[1] is target
    assert isinstance(seen[2], SimpleNamespace)
    assert current_target() is None


@pytest.mark.asyncio
async def test_emit_regex_fans_out():
    """Test that emitting a compiled pattern emits every matching event."""
    bus = EventBus()

    bus.on("a.1", lambda: 1)
    bus.on("a.2", lambda: 2)
    bus.on("b", lambda: 3)

    results = await bus.emit(re.compile(r"^a\."))

    assert set(results) == {"a.1", "a.2"}
    assert results["a.1"] == [ResultItem(True, 1, 0, 0)]
    assert results["a.2"] == [ResultItem(True, 2, 0, 0)]
    assert bus.already_emitted("b") is False


@pytest.mark.asyncio
async def test_emit_once():
    """Test that emit_once() only emits the first time."""
    bus = EventBus()
    out = []

    bus.on("boot", lambda: out.append(1))
    assert await bus.emit_once("boot") == [ResultItem(True, None, 0, 0)]
    assert await bus.emit_once("boot") is None
    assert out == [1]


@pytest.mark.asyncio
async def test_emit_args_forms():
    """Test that emit_event() accepts a list, a tuple or a single argument."""
    bus = EventBus(return_status=False)
    seen = []

    bus.on("e", lambda *args: seen.append(args))
    await bus.emit_event("e", [1, 2])
    await bus.emit_event("e", (3,))
    await bus.emit_event("e", "single")
    await bus.emit_event("e")

    assert seen == [(1, 2), (3,), ("single",), ()]


def test_event_bus_emit_sync_no_loop():
    """Test emit_sync when no event loop is running."""
    bus = EventBus()
    out = []

    async def handler():
        out.append("called")

    bus.on("evt", handler)
    results = bus.emit_sync("evt")

    assert out == ["called"]
    assert results == [ResultItem(True, None, 0, 0)]


@pytest.mark.asyncio
async def test_event_bus_emit_sync_with_loop():
    """Test emit_sync when event loop is running returns a Task."""
    bus = EventBus()
    out = []

    async def handler():
        await asyncio.sleep(0.01)
        out.append("called")

    bus.on("evt", handler)

    task = bus.emit_sync("evt")

    assert isinstance(task, asyncio.Task)
    await task
    assert out == ["called"]


def test_event_bus_off_forms():
    """Test the different ways off() can unregister listeners."""
    bus = EventBus()

    def h1(): ...

    def h2(): ...

    listener = bus.on("evt", h1)
    bus.on("evt", h2)
    bus.on("other", h2)

    assert bus.off(listener) == 1
    assert bus.off(listener) == 0
    assert bus.off("evt", h1) == 0
    assert bus.off(h2) == 2
    assert bus.off("nonexistent") == 0
    with pytest.raises(InvalidArgument):
        bus.off(42)


def test_has_listener_and_events():
    """Test introspection helpers."""
    bus = EventBus()

    def handler(): ...

    listener = bus.on("evt", handler)
    bus.on(re.compile("^ev"), handler)

    assert bus.has_listener("evt", handler)
    assert bus.has_listener("evt", "handler")
    assert bus.has_listener(listener)
    assert not bus.has_listener("other", handler)
    assert bus.has_any_listeners("evt")
    assert not bus.has_any_listeners("zzz")
    assert bus.events(re.compile("^e")) == ["evt"]
    assert len(bus.events()) == 2
    assert len(bus.get_listeners("evt")) == 2
    assert len(bus.get_listeners("evt", duplicates=False)) == 1

    bus.on_unhandled(handler)
    assert bus.has_any_listeners("zzz")


def test_add_listener_any_order():
    """Test that add_listener() accepts its arguments in any order."""
    bus = EventBus(default_index=5)

    def handler(): ...

    listener = bus.add_listener(handler, "once", "evt", "--")
    assert listener.pattern == "evt"
    assert listener.once is True
    assert listener.index == 3

    listener = bus.add_listener({"pattern": "evt", "callback": handler})
    assert listener.index == 5


@pytest.mark.asyncio
async def test_listener_raising_cancelled_error_is_a_failure():
    """Test that a listener awaiting a cancelled future does not cancel the emission."""
    calls, on_error = recorder()
    bus = EventBus(on_error=on_error)

    async def awaits_cancelled():
        future = asyncio.get_running_loop().create_future()
        future.cancel()
        await future

    bus.on("c", awaits_cancelled)
    bus.on("c", lambda: "ok")

    status = bus.emit_event("c")
    results = await asyncio.wait_for(status, 1)

    assert len(results) == 2
    failed = next(r for r in results if r.position == 0)
    assert failed.success is False
    assert isinstance(failed.value, asyncio.CancelledError)
    assert ResultItem(True, "ok", 0, 1) in results
    assert status.done
    assert status[0].finished == 2
    assert len(calls) == 1
    assert isinstance(calls[0][0], ListenerFailed)


@pytest.mark.asyncio
async def test_cancelling_the_emission_cancels_its_listeners():
    """Test that cancelling an emission task still propagates."""
    bus = EventBus()
    started = asyncio.Event()
    cancelled = []

    async def slow():
        started.set()
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    bus.on("e", slow)
    task = bus.emit("e")
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert cancelled == [True]


class Handler:
    def __init__(self):
        self.calls = 0

    def on_go(self):
        self.calls += 1


@pytest.mark.asyncio
async def test_bound_method_registered_twice_runs_once():
    """Test that the same bound method counts as one callback."""
    bus = EventBus()
    handler = Handler()

    bus.on("go", handler.on_go)
    bus.on("go", handler.on_go)
    await bus.emit("go")

    assert handler.calls == 1
    assert len(bus.get_listeners("go", duplicates=False)) == 1


def test_bound_method_removal_and_lookup():
    """Test off(), has_listener() and remove_listener() with bound methods."""
    bus = EventBus()
    handler = Handler()

    bus.on("go", handler.on_go)
    assert bus.has_listener("go", handler.on_go)
    assert bus.off(handler.on_go) == 1

    bus.on("go", handler.on_go)
    assert bus.remove_listener(handler.on_go, "go") is not None
    assert bus.get_listeners("go") == []

    # another instance's method is a different callback
    bus.on("go", Handler().on_go)
    assert not bus.has_listener("go", handler.on_go)


@pytest.mark.asyncio
async def test_exclude_bound_method():
    """Test excluding a bound method passed as a fresh attribute access."""
    bus = EventBus()
    handler = Handler()
    out = []

    bus.on("go", handler.on_go)
    bus.on("go", lambda: out.append("other"))

    await bus.emit_event("go", (), {"exclude": handler.on_go})

    assert handler.calls == 0
    assert out == ["other"]


@pytest.mark.asyncio
async def test_one_time_emitter_options_keep_bus_options():
    """Test that an EmitterOptions passed for one emission only overrides what it sets."""
    calls, on_error = recorder()
    bus = EventBus(on_error=on_error)

    def failing():
        raise RuntimeError("boom")

    bus.on("y", failing)

    future = bus.emit_event("y", (), EmitterOptions(return_status=False))
    assert not isinstance(future, EmitStatus)
    await future

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_emit_regex_keeps_one_time_overrides():
    """Test that one-time options reach every emission of a pattern emit."""
    calls, on_error = recorder()
    bus = EventBus(group_timeout=5)
    release = asyncio.Event()

    async def slow():
        await release.wait()

    bus.on("a.1", slow, index=0)
    bus.on("a.1", lambda: "next", index=1)

    results = await asyncio.wait_for(
        bus.emit_events(re.compile("^a"), (), {"group_timeout": 0.01, "on_error": on_error}), 1
    )
    release.set()
    await asyncio.sleep(0.01)

    assert [r.value for r in results["a.1"]] == ["next"]
    assert isinstance(calls[0][0], GroupTimeout)


@pytest.mark.asyncio
async def test_one_time_logger(caplog):
    """Test that a logger passed for one emission receives its failure records."""
    bus = EventBus()
    custom = logging.getLogger("custom.emission")

    def failing():
        raise RuntimeError("boom")

    bus.on("evt", failing)
    with caplog.at_level(logging.ERROR, logger="custom.emission"):
        await bus.emit_event("evt", (), {"log": custom})

    assert [r.name for r in caplog.records if r.levelno == logging.ERROR] == ["custom.emission"]
