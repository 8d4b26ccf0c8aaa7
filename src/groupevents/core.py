"""
groupevents.core
----------------

Function-style shortcuts bound to a module-level default bus.
"""

import re
from typing import Any, Awaitable, Callable, List, Optional

from .event_bus import EventBus
from .listener import Listener, ListenerFunc, Pattern

# -------------------- module-level default bus --------------------

_default_bus = EventBus()

_EVERYTHING = re.compile("")


def default_bus() -> EventBus:
    """Return the bus the module-level functions use."""
    return _default_bus


# Registration
def on(
    pattern: Pattern,
    callback: ListenerFunc,
    *,
    once: bool = False,
    index: Optional[int] = None,
) -> Listener:
    """
    Register a listener on the default bus.
    Lower indexes run first; listeners sharing an index run concurrently.

    Args:
        pattern (str | re.Pattern): The event name, or an expression searched in event names.
        callback (ListenerFunc): The callback to register.
        once (bool, optional): Whether the callback should be called only once.
                               Defaults to False.
        index (int, optional): The group index. Defaults to the bus's default_index.

    Returns:
        Listener: The registered listener.
    """
    return _default_bus.on(pattern, callback, once=once, index=index)


def once(pattern: Pattern, callback: ListenerFunc, *, index: Optional[int] = None) -> Listener:
    """Register a listener that runs at most once."""
    return _default_bus.once(pattern, callback, index=index)


def after(*args: Any) -> Optional[Listener]:
    """
    Register a listener, replaying the last emission right away if there was one.

    See `EventBus.after`.
    """
    return _default_bus.after(*args)


def off(target: Any, callback: Optional[ListenerFunc] = None) -> int:
    """
    Unregister listeners. Returns the number of removed listeners.

    Args:
        target: A pattern (all its listeners, or ``callback`` only), a
                `Listener`, or a callback (removed everywhere).
        callback (ListenerFunc, optional): The callback to unregister from ``target``.

    Returns:
        int: The number of removed listeners.
    """
    return _default_bus.off(target, callback)


def clear() -> None:
    """
    Remove all listeners from the default bus and forget what was emitted.

    Returns:
        None
    """
    _default_bus.clear()
    _default_bus.clear_emitted(_EVERYTHING)


def list_receivers(pattern: Pattern) -> List[ListenerFunc]:
    """
    Return the callbacks registered for `pattern`.

    Args:
        pattern (str | re.Pattern): The event to list receivers for.

    Returns:
        List[ListenerFunc]: The callbacks, in registration order.
    """
    return _default_bus.list_receivers(pattern)


def _get_bus(bus: Optional[EventBus] = None) -> EventBus:
    return bus or _default_bus


# Decorator
def receiver(
    pattern: Pattern,
    *,
    once: bool = False,
    index: Optional[int] = None,
    bus: Optional[EventBus] = None,
) -> Callable[[ListenerFunc], ListenerFunc]:
    """
    Decorator to register a function as a listener for `pattern`.
    Listener signature: listener(*args); pattern listeners get the event name first.

    Args:
        pattern (str | re.Pattern): The event to listen for.
        once (bool, optional): Whether the listener should be called only once. Defaults to False.
        index (int, optional): The group index. Defaults to the bus's default_index.
        bus (EventBus, optional): The event bus to register the listener on.
                                  Defaults to None. If None, the default bus is used.

    Returns:
        Callable[[ListenerFunc], ListenerFunc]: The decorator function.

    Example:
    @receiver("my_event", index=1, once=True)
    def my_listener(*args):
        print("my_listener called with args: ", args)
    """
    return _get_bus(bus).receiver(pattern, once=once, index=index)


# Dispatch
def emit(pattern: Pattern, *args: Any) -> Awaitable[Any]:
    """
    Emit `pattern` on the default bus. Must be called with a running event loop.

    Args:
        pattern (str | re.Pattern): The event to emit, or an expression matching registered events.
        *args: Positional arguments to pass to the listeners.

    Returns:
        An awaitable of the results. Listener failures are in the results,
        they never make it fail.

    Example:
    await emit("my_event", arg1, arg2)
    """
    return _default_bus.emit(pattern, *args)


def emit_sync(pattern: Pattern, *args: Any):
    """
    Convenience to use emit(...) from sync code.

    - If no loop is running, it blocks until done and returns the results.
    - If a loop is running, schedules and returns an asyncio.Task (fire-and-forget).

    Args:
        pattern (str | re.Pattern): The event to emit.
        *args: Positional arguments to pass to the listeners.

    Returns:
        The results if no loop is running, otherwise an asyncio.Task

    Example:
    emit_sync("my_event", arg1, arg2)
    """
    return _default_bus.emit_sync(pattern, *args)
