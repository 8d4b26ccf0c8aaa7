"""
Event bus implementation.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import re
from dataclasses import replace
from types import SimpleNamespace
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Set,
    Union,
)

from .errors import GroupTimeout, InvalidArgument, ListenerFailed, describe
from .listener import Listener, ListenerArgs, ListenerFunc, Pattern, is_pattern
from .options import EmitterOptions, callbacks_of, log_error
from .registry import GroupedListeners, Registry, first_per_callback
from .status import EmitStatus, ListenerState, ResultItem

logger = logging.getLogger(__name__)

# Receiver for emit_as="global", shared by every bus in the process
GLOBAL_TARGET = SimpleNamespace()

MATCH_ALL = re.compile(".+")

OneTimeOptions = Union[EmitterOptions, Mapping[str, Any], None]


def _as_args(args: Any) -> tuple:
    if args is None:
        return ()
    if isinstance(args, (list, tuple)):
        return tuple(args)
    return (args,)


def _cancelled_from_outside(exc: BaseException) -> bool:
    """True for a CancelledError raised because the running task itself was cancelled."""
    if not isinstance(exc, asyncio.CancelledError):
        return False
    task = asyncio.current_task()
    return task is not None and task.cancelling() > 0


class CompoundEvent:
    """
    Aggregator behind `EventBus.create_compound_event`.

    ``fired`` maps each constituent event to the arguments it arrived with,
    ``remaining`` lists the ones still awaited.
    """

    def __init__(self, name: str, events: Sequence[str]) -> None:
        self.name = name
        self.events = list(events)
        self.fired: Dict[str, tuple] = {}
        self.remaining: List[str] = list(events)
        self.cancelled = False
        self.listeners: List[Listener] = []

    @property
    def complete(self) -> bool:
        return not self.remaining

    def cancel(self) -> None:
        """Never raise the compound event, even if every constituent arrives later."""
        self.cancelled = True
        for listener in self.listeners:
            listener.remove()

    def __repr__(self) -> str:
        return f"<CompoundEvent '{self.name}' remaining={self.remaining}>"


class CompoundListener(Listener):
    """The once-listener returned by `EventBus.after_all`."""

    def __init__(
        self, compound: CompoundEvent, callback: ListenerFunc, index: int = 0
    ) -> None:
        super().__init__(compound.name, callback, once=True, index=index)
        self.compound = compound

    @property
    def remaining(self) -> List[str]:
        return list(self.compound.remaining)

    @property
    def fired(self) -> Dict[str, tuple]:
        return dict(self.compound.fired)


class FirstOf(List[Listener]):
    """Listeners registered by `EventBus.on_first`; only the first to fire runs."""

    def __init__(self) -> None:
        super().__init__()
        self.fired = False

    def remove_all(self) -> None:
        while self:
            self.pop().remove()


class EventBus:
    """
    An isolated event bus.

    Listeners are grouped by index: every listener in a group runs
    concurrently, groups run one after the other in ascending order. Listener
    failures are reported to ``on_error`` and recorded in the results, they
    never make an emission fail.
    """

    def __init__(self, options: Optional[EmitterOptions] = None, **kwargs: Any) -> None:
        """
        Initialize a new EventBus instance.

        Args:
            options (EmitterOptions, optional): Defaults for every emission.
            **kwargs: Individual options, laid on top of ``options``.
        """
        if options is None:
            options = EmitterOptions()
        elif not isinstance(options, EmitterOptions):
            raise InvalidArgument(f"Expected EmitterOptions, got: {describe(options)}")
        self.options = options.merged(kwargs)
        self.log = self.options.log or logger

        self._registry = Registry()
        self._emitted: Dict[str, tuple] = {}
        self._running: Dict[str, List[asyncio.Future]] = {}
        self._intercept: Dict[str, Callable[..., Any]] = {}
        self._compounds: Dict[str, CompoundEvent] = {}
        # strong references to tasks nobody else awaits
        self._background: Set[asyncio.Future] = set()

    @property
    def registry(self) -> Registry:
        return self._registry

    # -------------------- registration API --------------------
    def add_listener(self, *args: Any) -> Listener:
        """
        Register a listener from arguments in any order.

        Accepts a pattern (name or compiled expression), a callback, an
        optional once flag (``True`` or ``"once"``) and an optional index
        (an int, or ``"+"``/``"-"`` runs relative to ``default_index``). A
        single mapping with the keys ``pattern``, ``callback``, ``once`` and
        ``index`` works too.

        NOTE: the same callback can be registered twice for one event, but an
        emission only calls it once unless ``allow_duplicates`` is set.

        Raises:
            InvalidArgument: If the pattern or callback is missing or malformed.

        Returns:
            Listener: The registered listener.
        """
        parsed = ListenerArgs.parse(args, self.options.default_index)
        return self._registry.add(parsed.build())

    def on(
        self,
        pattern: Pattern,
        callback: ListenerFunc,
        *,
        once: bool = False,
        index: Optional[int] = None,
    ) -> Listener:
        """
        Register ``callback`` for ``pattern``.

        Args:
            pattern (str | re.Pattern): Event name, or an expression searched in event names.
            callback (callable): Sync or async. Returning ``"off"`` unsubscribes it.
            once (bool, optional): Remove after the first call. Defaults to False.
            index (int, optional): Group index. Defaults to ``options.default_index``.

        Returns:
            Listener: The registered listener.
        """
        if index is None:
            index = self.options.default_index
        return self._registry.add(ListenerArgs(pattern, callback, once, index).build())

    def once(self, pattern: Pattern, callback: ListenerFunc, *, index: Optional[int] = None) -> Listener:
        """Register a listener that is removed before its first call."""
        return self.on(pattern, callback, once=True, index=index)

    def on_all(self, callback: ListenerFunc, *, index: Optional[int] = None) -> Listener:
        """Register ``callback`` for every event. It gets the event name as first argument."""
        return self.on(MATCH_ALL, callback, index=index)

    def on_unhandled(self, callback: Union[ListenerFunc, bool, None]) -> Optional[Listener]:
        """
        Set the listener for events nothing else listens to. ``False`` clears it.

        Calling it again replaces the previous one. It gets the event name as
        first argument.
        """
        return self._registry.set_catch_all(callback)

    def receiver(self, pattern: Pattern, *, once: bool = False, index: Optional[int] = None):
        """
        Decorator to register a function as a listener for ``pattern``.

        Args:
            pattern (str | re.Pattern): The event to listen for.
            once (bool, optional): Whether the listener should be called only once.
            index (int, optional): Group index. Defaults to ``options.default_index``.

        Returns:
            Callable[[ListenerFunc], ListenerFunc]: The decorator function.
        """

        def wrapper(func: ListenerFunc) -> ListenerFunc:
            self.on(pattern, func, once=once, index=index)
            return func

        return wrapper

    def intercept_event(self, event: str, interceptor: Callable[..., Any]) -> None:
        """
        Run ``interceptor(*args)`` before every emission of ``event``.

        If it returns a list or tuple, that becomes the emitted arguments.
        Anything else cancels the emission.
        """
        if not isinstance(event, str):
            raise InvalidArgument(f"Arg #1 should be a string event, got: {describe(event)}")
        if not callable(interceptor):
            raise InvalidArgument(f"Arg #2 should be an interceptor function, got: {describe(interceptor)}")
        self._intercept[event] = interceptor

    def stop_intercepting(self, event: str) -> None:
        if not isinstance(event, str):
            raise InvalidArgument(f"Arg #1 should be a string event, got: {describe(event)}")
        self._intercept.pop(event, None)

    # -------------------- lookup --------------------
    def get_listeners(self, pattern: Pattern, duplicates: bool = True) -> List[Listener]:
        """
        Listeners for a name (including matching pattern listeners), or the
        exact-name listeners a compiled pattern matches. With ``duplicates``
        off, only the first listener per callback is kept.
        """
        listeners = self._registry.lookup(pattern)
        return listeners if duplicates else first_per_callback(listeners)

    def list_receivers(self, pattern: Pattern) -> List[ListenerFunc]:
        """Return the callbacks registered for ``pattern``."""
        return [listener.callback for listener in self._registry.lookup(pattern)]

    def has_listener(self, pattern: Union[Pattern, Listener], callback: Any = None) -> bool:
        """
        Check if ``callback`` (a function or a function name) listens to ``pattern``.
        """
        if isinstance(pattern, Listener):
            pattern, callback = pattern.pattern, pattern.callback
        if isinstance(callback, str):
            return any(l.name == callback for l in self._registry.lookup(pattern))
        if callable(callback):
            return any(l.callback == callback for l in self._registry.lookup(pattern))
        raise InvalidArgument(
            f"Arg #2 should be a function or a function name, got: {describe(callback)}"
        )

    def has_any_listeners(self, pattern: Pattern) -> bool:
        if self._registry.catch_all is not None:
            return True
        return bool(self._registry.lookup(pattern))

    def events(self, regex: Optional["re.Pattern[str]"] = None) -> List[Pattern]:
        """Registered event names matching ``regex``, or every name and pattern."""
        return self._registry.events(regex)

    # -------------------- removal --------------------
    def remove_listener(
        self, target: Union[Listener, ListenerFunc], pattern: Optional[Pattern] = None
    ) -> Optional[Listener]:
        """
        Remove a single listener: a `Listener` handle, or ``target`` registered for ``pattern``.

        Raises:
            ListenerNotFound: If a `Listener` handle is not registered.

        Returns:
            Listener | None: The removed listener.
        """
        return self._registry.remove(target, pattern)

    def remove_listeners(self, callback: ListenerFunc) -> List[Pattern]:
        """Remove ``callback`` from every event. Returns the patterns it was removed from."""
        return self._registry.remove_everywhere(callback)

    def remove_event(self, pattern: Pattern) -> List[Listener]:
        """Remove every listener registered with exactly ``pattern``."""
        return self._registry.remove_event(pattern)

    def off(self, target: Union[Pattern, Listener, ListenerFunc], callback: Optional[ListenerFunc] = None) -> int:
        """
        Unregister listeners. Returns the number removed.

        - ``off(listener)``: that listener
        - ``off(pattern)``: every listener registered with ``pattern``
        - ``off(pattern, callback)``: ``callback`` for ``pattern``
        - ``off(callback)``: ``callback`` everywhere
        """
        if isinstance(target, Listener):
            return 1 if target.remove() else 0
        if is_pattern(target):
            if callback is None:
                return len(self._registry.remove_event(target))
            return 1 if self._registry.remove(callback, target) else 0
        if callable(target):
            return len(self._registry.remove_everywhere(target))
        raise InvalidArgument(
            f"Arg #1 should be a pattern, a listener or a function, got: {describe(target)}"
        )

    def clear(self, event: Optional[Pattern] = None) -> None:
        """Remove the listeners of ``event``, or every listener (and the catch-all)."""
        if event is None:
            self._registry.clear()
        else:
            self._registry.remove_event(event)

    # -------------------- dispatch --------------------
    def listeners_for_emit(
        self,
        event: str,
        exclude: Any = None,
        allow_duplicates: Optional[bool] = None,
    ) -> GroupedListeners:
        """
        Snapshot the listeners an emission of ``event`` would run, by group index.

        Can be called ahead of time and passed as the ``listeners`` option to
        fix the listener set before going async.
        """
        if not isinstance(event, str):
            raise InvalidArgument(f"Arg #1 should be a string event, got: {describe(event)}")
        if allow_duplicates is None:
            allow_duplicates = self.options.allow_duplicates

        listeners = self._registry.lookup(event)
        if not allow_duplicates:
            listeners = first_per_callback(listeners)

        if not listeners and self._registry.catch_all is not None:
            listeners = [self._registry.catch_all]

        excluded = callbacks_of(exclude)
        if excluded:
            listeners = [l for l in listeners if not any(l.callback == cb for cb in excluded)]

        grouped = GroupedListeners()
        for listener in listeners:
            grouped.setdefault(listener.index, []).append(listener)
        return grouped

    def emit_event(
        self,
        event: str,
        args: Any = (),
        options: OneTimeOptions = None,
        *,
        failure: Optional[BaseException] = None,
    ) -> Union[EmitStatus, "asyncio.Future[List[ResultItem]]"]:
        """
        Schedule every listener for ``event``.

        Which listeners run is decided now; none of them runs before the
        caller yields to the event loop. Must be called with a running loop.

        Args:
            event (str): The event to emit.
            args (optional): Argument list; a non-sequence is a single argument.
            options (optional): One-time options laid on top of the bus options.
            failure (BaseException, optional): Context error reported for failing listeners.

        Raises:
            InvalidArgument: If ``event`` is not a string or an option is invalid.

        Returns:
            EmitStatus, or a future of the results if ``return_status`` is off.
            The results are ``(success, value, group, position)`` items in
            completion order.
        """
        if not isinstance(event, str):
            raise InvalidArgument(f"Arg #1 should be a string event, got: {describe(event)}")
        return self._schedule(event, args, self.options.merged(options), failure)

    def _schedule(
        self,
        event: str,
        args: Any,
        opts: EmitterOptions,
        failure: Optional[BaseException],
    ) -> Union[EmitStatus, "asyncio.Future[List[ResultItem]]"]:
        grouped = opts.listeners
        if grouped is None:
            grouped = self.listeners_for_emit(event, opts.exclude, opts.allow_duplicates)
        status = EmitStatus(event, grouped)
        args = _as_args(args)
        loop = asyncio.get_running_loop()

        interceptor = self._intercept.get(event)
        if interceptor is not None:
            replaced = interceptor(*args)
            if not isinstance(replaced, (list, tuple)):
                self._log(opts).debug("Event '%s' was intercepted", event)
                status.intercepted = True
                status.task = loop.create_future()
                status.task.set_result([])
                self._progress(opts, event, status)
                return status if opts.return_status else status.task
            args = tuple(replaced)

        self._emitted[event] = args
        failure = failure or ListenerFailed(event)
        task = loop.create_task(self._run(event, args, status, opts, failure))
        status.task = task

        running = self._running.setdefault(event, [])
        running.append(task)
        task.add_done_callback(running.remove)

        return status if opts.return_status else task

    async def _run(
        self,
        event: str,
        args: tuple,
        status: EmitStatus,
        opts: EmitterOptions,
        failure: BaseException,
    ) -> List[ResultItem]:
        log = self._log(opts)
        try:
            call_as = self._receiver(opts.emit_as)
            log.debug(
                "Emitting '%s' to %d listener(s) in group(s) %s", event, len(status), status.indexes
            )
            last = status.groups[-1] if status.groups else None
            for group in status.groups:
                tasks = []
                for position, listener in enumerate(group.listeners):
                    status.set_state(group.index, position, ListenerState.EXECUTING)
                    self._progress(opts, event, status, group.index, position)
                    task = asyncio.ensure_future(
                        self._run_listener(
                            event, args, status, group.index, position, listener, call_as, opts, failure
                        )
                    )
                    self._keep(task)
                    tasks.append(task)

                if opts.group_timeout and group is not last:
                    _, pending = await asyncio.wait(tasks, timeout=opts.group_timeout)
                    if pending:
                        self._report(
                            opts,
                            GroupTimeout(event, group.index, opts.group_timeout, len(pending)),
                            {"event": event, "pending": [group.listeners[tasks.index(t)] for t in pending]},
                        )
                else:
                    await asyncio.gather(*tasks)

                if opts.group_delay and group is not last:
                    await asyncio.sleep(opts.group_delay)
        except Exception:
            log.exception(
                "BUG: emitting '%s' should have handled every error, but this got through", event
            )

        # listeners still running after a group timeout only show up in status.results
        return list(status.results)

    async def _run_listener(
        self,
        event: str,
        args: tuple,
        status: EmitStatus,
        index: int,
        position: int,
        listener: Listener,
        call_as: Any,
        opts: EmitterOptions,
        failure: BaseException,
    ) -> None:
        try:
            value = await listener.execute(call_as, args, event)
        except (Exception, asyncio.CancelledError) as exc:
            if _cancelled_from_outside(exc):
                raise
            self._report(opts, failure, {"event": event, "listener": listener, "args": args}, exc)
            status.results.append(ResultItem(False, exc, index, position))
        else:
            status.results.append(ResultItem(True, value, index, position))

        status.set_state(index, position, ListenerState.FINISHED)
        self._progress(opts, event, status, index, position)

    def emit_events(
        self, regex: "re.Pattern[str]", args: Any = (), options: OneTimeOptions = None
    ) -> "asyncio.Task[Dict[str, List[ResultItem]]]":
        """
        Emit every registered event name matching ``regex``.

        Returns:
            asyncio.Task: Resolves with ``{event: results}`` once every emission is done.
        """
        if not isinstance(regex, re.Pattern):
            raise InvalidArgument(f"Arg #1 should be a compiled pattern event, got: {describe(regex)}")

        opts = self.options.merged(options, return_status=False)
        failure = ListenerFailed(
            regex.pattern, f"A listener matching pattern event '/{regex.pattern}/' failed."
        )
        pending = {
            name: self._schedule(name, args, opts, failure)
            for name in self._registry.events(regex)
        }

        async def _collect() -> Dict[str, List[ResultItem]]:
            results = {}
            for name, future in pending.items():
                results[name] = await future
            return results

        return self._spawn(_collect())

    def emit(self, event: Pattern, *args: Any) -> Awaitable[Any]:
        """
        Emit ``event`` with ``args``; a compiled pattern emits every matching event.

        Returns:
            An awaitable of the results list (for a name) or of
            ``{event: results}`` (for a compiled pattern). It never fails
            because of a listener.

        Example:
        await bus.emit("my_event", arg1, arg2)
        """
        if isinstance(event, re.Pattern):
            return self.emit_events(event, args)
        if isinstance(event, str):
            return self.emit_event(event, args, {"return_status": False})
        raise InvalidArgument(f"Arg #1 should be a string or compiled pattern event, got: {describe(event)}")

    def emit_once(self, event: str, *args: Any) -> Awaitable[Any]:
        """Emit ``event`` unless it was emitted before, in which case resolve with None."""
        if self._emitted_name(event) is None:
            return self.emit(event, *args)
        future = asyncio.get_running_loop().create_future()
        future.set_result(None)
        return future

    def emit_sync(self, event: Pattern, *args: Any):
        """
        Convenience to use emit(...) from sync code.

        - If no loop is running, it blocks until done and returns the results.
        - If a loop is running, returns the scheduled task (fire-and-forget).
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self._emit_and_wait(event, args))
        return self.emit(event, *args)

    async def _emit_and_wait(self, event: Pattern, args: tuple) -> Any:
        return await self.emit(event, *args)

    # -------------------- replay --------------------
    def _emitted_name(self, pattern: Pattern) -> Optional[str]:
        if isinstance(pattern, re.Pattern):
            return next((name for name in self._emitted if pattern.search(name)), None)
        if isinstance(pattern, str):
            return pattern if pattern in self._emitted else None
        raise InvalidArgument(f"Arg #1 should be a string or compiled pattern event, got: {describe(pattern)}")

    def already_emitted(self, pattern: Pattern) -> Union[bool, Optional[str]]:
        """
        For a name: whether it has been emitted. For a compiled pattern: the
        first emitted event it matches, or None.
        """
        name = self._emitted_name(pattern)
        if isinstance(pattern, str):
            return name is not None
        return name

    def clear_emitted(self, pattern: Pattern) -> Union[bool, List[str]]:
        """
        Forget past emissions. Affects `already_emitted`, `after` and `emit_once`.

        Returns:
            bool for a name (whether it was emitted), the cleared names for a
            compiled pattern.
        """
        if isinstance(pattern, re.Pattern):
            names = [name for name in self._emitted if pattern.search(name)]
            for name in names:
                del self._emitted[name]
            return names
        if isinstance(pattern, str):
            return self._emitted.pop(pattern, None) is not None
        raise InvalidArgument(f"Arg #1 should be a string or compiled pattern event, got: {describe(pattern)}")

    def if_not_emitted(
        self, event: Pattern, callback: Callable[[], Any], wait: Optional[float] = None
    ) -> Callable[[], None]:
        """
        Call ``callback`` if ``event`` has not been emitted, now or after ``wait`` seconds.

        Returns:
            A function that cancels a pending check.
        """
        self._emitted_name(event)
        if not callable(callback):
            raise InvalidArgument(f"Arg #2 should be a callback function, got: {describe(callback)}")
        failure = ListenerFailed(str(event), f"Callback for event '{event}' not being emitted failed.")

        def _check() -> None:
            if self._emitted_name(event) is not None:
                return
            try:
                result = callback()
            except Exception as exc:
                self._report(self.options, failure, {"event": event}, exc)
                return
            if inspect.isawaitable(result):
                self._spawn(self._settle(result, failure, {"event": event}))

        if wait is None:
            _check()
            return lambda: None
        return asyncio.get_running_loop().call_later(wait, _check).cancel

    async def _settle(self, awaitable: Awaitable[Any], failure: BaseException, details: dict) -> None:
        try:
            await awaitable
        except (Exception, asyncio.CancelledError) as exc:
            if _cancelled_from_outside(exc):
                raise
            self._report(self.options, failure, details, exc)

    def after(self, *args: Any) -> Optional[Listener]:
        """
        Like `add_listener`, but if the event was already emitted the callback
        also runs right away (on the next loop turn) with the last emitted
        arguments, after any emission of it still in flight.

        NOTE: a replay ignores the listener's index.

        Returns:
            Listener | None: None if the listener was ``once`` and already
            ran on replay, else the registered listener.
        """
        listener = self.add_listener(*args)
        name = self._emitted_name(listener.pattern)
        if name is not None:
            if listener.once:
                listener.remove()
            self._replay(listener, name)
            if listener.once:
                return None
        return listener

    def _replay(self, listener: Listener, event: str) -> "asyncio.Task[None]":
        running = self._running.get(event)
        in_flight = running[-1] if running else None
        return self._spawn(self._execute_after(listener, event, in_flight))

    async def _execute_after(
        self, listener: Listener, event: str, in_flight: Optional[asyncio.Future]
    ) -> None:
        if in_flight is not None:
            await asyncio.wait([in_flight])
        args = self._emitted.get(event, ())
        try:
            await listener.execute(self._receiver(self.options.emit_as), args, event)
        except (Exception, asyncio.CancelledError) as exc:
            if _cancelled_from_outside(exc):
                raise
            self._report(
                self.options,
                ListenerFailed(event, f"Listener executed after '{event}' failed."),
                {"event": event, "listener": listener, "args": args},
                exc,
            )

    async def wait_for(self, pattern: Pattern, index: Optional[int] = None) -> tuple:
        """
        Wait until ``pattern`` fires (or return at once if it already has).

        Returns:
            tuple: The emitted arguments; pattern listeners get the event name first.
        """
        future = asyncio.get_running_loop().create_future()

        def _resolve(*args: Any) -> None:
            if not future.done():
                future.set_result(args)

        extra = () if index is None else (index,)
        self.after(pattern, _resolve, True, *extra)
        return await future

    def create_compound_event(self, name: str, events: Sequence[str]) -> CompoundEvent:
        """
        Emit ``name`` once, after every event in ``events`` has been emitted.

        Events emitted before the call count. The compound event gets a
        single argument: a dict mapping each constituent event to its
        arguments.
        """
        if not isinstance(name, str):
            raise InvalidArgument(f"Arg #1 should be a string event, got: {describe(name)}")
        if isinstance(events, str) or not events or not all(isinstance(e, str) for e in events):
            raise InvalidArgument(f"Arg #2 should be a list of string events, got: {describe(events)}")

        compound = CompoundEvent(name, events)
        failure = ListenerFailed(name, f"A listener for compound event '{name}' failed.")
        for event in compound.events:
            listener = self.after(event, self._constituent(compound, event, failure), True)
            if listener is not None:
                compound.listeners.append(listener)
        return compound

    def _constituent(
        self, compound: CompoundEvent, event: str, failure: BaseException
    ) -> Callable[..., None]:
        def _arrived(*args: Any) -> None:
            if compound.cancelled or event not in compound.remaining:
                return
            try:
                compound.fired[event] = args
                compound.remaining.remove(event)
                if compound.remaining:
                    self.log.debug(
                        "'%s' just ran, but compound event '%s' is still waiting on: %s",
                        event,
                        compound.name,
                        sorted(compound.remaining),
                    )
                    return
                self.log.debug("Running compound event '%s' now with: %s", compound.name, compound.fired)
                self.emit_event(
                    compound.name, [dict(compound.fired)], {"return_status": False}, failure=failure
                )
            except Exception:
                self.log.warning("Compound event '%s' will not run.", compound.name, exc_info=True)
                compound.cancel()

        _arrived.__name__ = f"compound_{compound.name}"
        return _arrived

    def after_all(
        self,
        events: Sequence[str],
        callback: ListenerFunc,
        timeout: Optional[float] = None,
        cancel_on_timeout: bool = False,
    ) -> CompoundListener:
        """
        Call ``callback`` once, after every event in ``events`` has been emitted.

        Args:
            events (list[str]): Events to wait for (already emitted ones count).
            callback: Gets one dict: event name -> emitted arguments.
            timeout (float, optional): Log a warning if still waiting after this many seconds.
            cancel_on_timeout (bool): Also remove the callback when the timeout fires.

        Returns:
            CompoundListener: Exposes ``remaining`` and ``fired``.
        """
        if isinstance(events, str) or not events or not all(isinstance(e, str) for e in events):
            raise InvalidArgument(f"Arg #1 should be a list of string events, got: {describe(events)}")
        if not callable(callback):
            raise InvalidArgument(f"Arg #2 should be a callback function, got: {describe(callback)}")

        name = "compoundEvent_" + "|".join(sorted(events))
        compound = self._compounds.get(name)
        if compound is None or compound.cancelled:
            compound = self._compounds[name] = self.create_compound_event(name, list(events))

        listener = CompoundListener(compound, callback, self.options.default_index)
        self._registry.add(listener)

        if self._emitted_name(name) is not None:
            listener.remove()
            self._replay(listener, name)
        elif timeout is not None:
            listener.timeout(self._stale_warning(listener, callback, cancel_on_timeout), timeout, cancel_on_timeout)
        return listener

    def _stale_warning(
        self, listener: CompoundListener, callback: ListenerFunc, cancelled: bool
    ) -> Callable[[], None]:
        def _warn() -> None:
            name = getattr(callback, "__name__", None)
            what = f"Callback {name}()" if name else "A callback"
            state = "is now cancelled (timed out)" if cancelled else "hasn't run yet"
            remaining = listener.remaining
            if not remaining:
                self.log.error(
                    "BUG: %s for %s %s, but all events have fired: %s",
                    what, listener.pattern, state, listener.fired,
                )
            else:
                self.log.warning(
                    "%s for %s %s because we are still waiting on %d event(s): %s",
                    what, listener.pattern, state, len(remaining), ", ".join(remaining),
                )

        return _warn

    def on_first(self, *registrations: Sequence[Any]) -> FirstOf:
        """
        Register several listeners of which only the first to fire runs.

        Each registration is a tuple of `add_listener` arguments, eg.
        ``bus.on_first(("done", on_done), ("failed", on_failed))``. When one
        fires, all of them are removed before its callback runs.

        Returns:
            FirstOf: The listeners, with ``remove_all()``.
        """
        first = FirstOf()
        try:
            for args in registrations:
                if not isinstance(args, (list, tuple)):
                    raise InvalidArgument(
                        f"Each registration should be a tuple of listener args, got: {describe(args)}"
                    )
                parsed = ListenerArgs.parse(args, self.options.default_index)
                parsed = replace(parsed, callback=self._first_of(first, parsed.callback), once=True)
                first.append(self._registry.add(parsed.build()))
        except Exception:
            first.remove_all()
            raise
        return first

    @staticmethod
    def _first_of(first: FirstOf, callback: ListenerFunc) -> ListenerFunc:
        @functools.wraps(callback)
        def _run_first(*args: Any) -> Any:
            if first.fired:
                return None
            first.fired = True
            first.remove_all()
            return callback(*args)

        return _run_first

    def after_first(self, *registrations: Sequence[Any]) -> Optional[FirstOf]:
        """
        Like `on_first`, but an event that was already emitted wins right away.

        Returns:
            FirstOf | None: None if one of the events was already emitted.
        """
        first = self.on_first(*registrations)
        for listener in list(first):
            name = self._emitted_name(listener.pattern)
            if name is not None:
                first.remove_all()
                self._replay(listener, name)
                return None
        return first

    # -------------------- internals --------------------
    def _receiver(self, emit_as: Any) -> Any:
        if isinstance(emit_as, str):
            if emit_as == "this":
                return self
            if emit_as == "global":
                return GLOBAL_TARGET
            if emit_as == "empty":
                return SimpleNamespace()
        return emit_as

    def _progress(
        self,
        opts: EmitterOptions,
        event: str,
        status: EmitStatus,
        index: Optional[int] = None,
        position: Optional[int] = None,
    ) -> None:
        if opts.on_progress is None:
            return
        try:
            opts.on_progress(event, status, index, position)
        except Exception:
            self._log(opts).warning("on_progress raised for event '%s'", event, exc_info=True)

    def _report(
        self,
        opts: EmitterOptions,
        context_error: BaseException,
        details: Optional[dict] = None,
        original: Optional[BaseException] = None,
    ) -> None:
        try:
            if opts.on_error is None:
                log_error(context_error, details, original, log=self._log(opts))
            else:
                opts.on_error(context_error, details, original)
        except Exception:
            self._log(opts).exception("Error handler raised while reporting: %s", context_error)

    def _log(self, opts: EmitterOptions) -> Any:
        return opts.log or self.log

    def _keep(self, future: asyncio.Future) -> None:
        self._background.add(future)
        future.add_done_callback(self._background.discard)

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._keep(task)
        return task

    def __repr__(self) -> str:
        return f"<EventBus events={len(self._registry.exact)} patterns={len(self._registry.patterns)}>"
