"""
Groupevents
-----------

In-process async event emitter with ordered listener groups and replay.

Features:

- Listeners for exact event names or compiled `re` patterns, plus a catch-all
  for otherwise unhandled events.
- Listener groups: every listener sharing an `index` runs concurrently, groups
  run in ascending order, with optional `group_timeout` and `group_delay`.
- `emit(event, *args)` schedules the listeners and returns an awaitable of
  `(success, value, group, position)` results. A failing listener is reported
  to `on_error` and recorded, it never makes the emission fail.
- `emit_event(...)` returns an `EmitStatus` with live per-listener progress.
- Replay: `after()` runs a late listener with the last emitted arguments;
  `after_all()`, `create_compound_event()`, `on_first()` and `after_first()`.
- Interceptors that rewrite or cancel an emission.
- `emit_sync(...)` helper to use from sync code.
- No dependencies.
"""

from .core import (
    after,
    clear,
    default_bus,
    emit,
    emit_sync,
    list_receivers,
    off,
    on,
    once,
    receiver,
)
from .errors import (
    GroupEventsError,
    GroupTimeout,
    InvalidArgument,
    ListenerFailed,
    ListenerNotFound,
)
from .event_bus import CompoundEvent, CompoundListener, EventBus, FirstOf
from .listener import OFF, Listener, ListenerArgs, Outcome, current_target
from .options import EmitterOptions, log_error
from .registry import GroupedListeners, Registry
from .status import EmitStatus, GroupStatus, ListenerState, ResultItem

__all__ = [
    "receiver",
    "emit",
    "emit_sync",
    "on",
    "once",
    "after",
    "off",
    "clear",
    "list_receivers",
    "default_bus",
    "EventBus",
    "EmitterOptions",
    "log_error",
    "Listener",
    "ListenerArgs",
    "Outcome",
    "OFF",
    "current_target",
    "Registry",
    "GroupedListeners",
    "EmitStatus",
    "GroupStatus",
    "ListenerState",
    "ResultItem",
    "CompoundEvent",
    "CompoundListener",
    "FirstOf",
    "GroupEventsError",
    "InvalidArgument",
    "ListenerNotFound",
    "ListenerFailed",
    "GroupTimeout",
]
