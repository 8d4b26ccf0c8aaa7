"""
Listeners: one registered callback and its scheduling metadata.
"""

from __future__ import annotations

import asyncio
import contextvars
import inspect
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Mapping, Optional, Sequence, Union

from .errors import InvalidArgument, ListenerNotFound, describe

if TYPE_CHECKING:
    from .registry import Registry

Pattern = Union[str, "re.Pattern[str]"]
ListenerFunc = Callable[..., Any]

# Returned by a callback to unsubscribe itself
OFF = "off"

_RELATIVE_INDEX = re.compile(r"\++|-+")

_target: contextvars.ContextVar[Any] = contextvars.ContextVar("groupevents_target", default=None)


def current_target() -> Any:
    """
    Return the receiver the running callback was emitted as (see ``emit_as``).

    Only meaningful inside a listener callback; returns None elsewhere.
    """
    return _target.get()


def is_pattern(value: Any) -> bool:
    """True for the two accepted event patterns: a name or a compiled expression."""
    return isinstance(value, (str, re.Pattern))


class Outcome(Enum):
    """What a callback handed back."""

    VALUE = "value"
    AWAITABLE = "awaitable"
    OFF = "off"

    @classmethod
    def of(cls, result: Any) -> "Outcome":
        if inspect.isawaitable(result):
            return cls.AWAITABLE
        if isinstance(result, str) and result == OFF:
            return cls.OFF
        return cls.VALUE


def check_fields(pattern: Any, callback: Any, once: Any, index: Any) -> None:
    """Raise `InvalidArgument` unless the four listener fields are well typed."""
    if not callable(callback):
        raise InvalidArgument(f"No listener function passed, got: {describe(callback)}")
    if not is_pattern(pattern):
        raise InvalidArgument(
            f"No event string or compiled pattern passed, got: {describe(pattern)}"
        )
    if not isinstance(once, bool):
        raise InvalidArgument(f"'once' should be a bool, got: {describe(once)}")
    if isinstance(index, bool) or not isinstance(index, int):
        raise InvalidArgument(f"'index' should be an int, got: {describe(index)}")


class ArgKind(Enum):
    """Discriminant for one positional registration argument."""

    PATTERN = "pattern"
    CALLBACK = "callback"
    ONCE = "once"
    INDEX = "index"


@dataclass
class ListenerArgs:
    """
    The four things a registration call can say, however they were passed.

    ``parse`` accepts the arguments in any order, ``from_fields`` accepts a
    mapping with the canonical names.
    """

    pattern: Pattern
    callback: ListenerFunc
    once: bool = False
    index: int = 0

    def __post_init__(self) -> None:
        check_fields(self.pattern, self.callback, self.once, self.index)

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any], default_index: int = 0) -> "ListenerArgs":
        unknown = sorted(set(fields) - {"pattern", "callback", "once", "index"})
        if unknown:
            raise InvalidArgument(f"Unexpected listener field(s): {', '.join(unknown)}")
        index = fields.get("index")
        return cls(
            pattern=fields.get("pattern"),
            callback=fields.get("callback"),
            once=fields.get("once", False),
            index=default_index if index is None else index,
        )

    @classmethod
    def parse(cls, args: Sequence[Any], default_index: int = 0) -> "ListenerArgs":
        """
        Classify positional registration arguments.

        - ``str`` or ``re.Pattern``: the event pattern
        - callable: the callback
        - ``bool`` or the string ``"once"``: the once flag
        - ``int``: the group index; a run of ``+`` or ``-`` shifts it
          relative to ``default_index`` (``"++"`` is ``default_index + 2``)

        A relative index or ``"once"`` is only read as such the first time;
        after that the string is taken as the event name.

        Raises:
            InvalidArgument: On an unclassifiable or repeated argument, or if
                the pattern or callback is missing.
        """
        if len(args) == 1 and isinstance(args[0], Mapping):
            return cls.from_fields(args[0], default_index)

        found: dict = {}
        for position, arg in enumerate(args, 1):
            kind = cls._kind(arg, found)
            if kind is None:
                raise InvalidArgument(
                    f"Unexpected arg #{position}, expected a pattern, a callback, a once flag "
                    f"or an index, got: {describe(arg)}"
                )
            if kind in found:
                raise InvalidArgument(
                    f"Too many {kind.value} args passed. Failed on arg #{position}: {describe(arg)}"
                )
            if kind is ArgKind.ONCE:
                arg = arg is True or arg == "once"
            elif kind is ArgKind.INDEX and isinstance(arg, str):
                arg = default_index + len(arg) if arg[0] == "+" else default_index - len(arg)
            found[kind] = arg

        return cls(
            pattern=found.get(ArgKind.PATTERN),
            callback=found.get(ArgKind.CALLBACK),
            once=found.get(ArgKind.ONCE, False),
            index=found.get(ArgKind.INDEX, default_index),
        )

    @staticmethod
    def _kind(arg: Any, found: Mapping[ArgKind, Any]) -> Optional[ArgKind]:
        if isinstance(arg, bool):
            return ArgKind.ONCE
        if isinstance(arg, int):
            return ArgKind.INDEX
        if isinstance(arg, re.Pattern):
            return ArgKind.PATTERN
        if isinstance(arg, str):
            if ArgKind.INDEX not in found and _RELATIVE_INDEX.fullmatch(arg):
                return ArgKind.INDEX
            if ArgKind.ONCE not in found and arg == "once":
                return ArgKind.ONCE
            return ArgKind.PATTERN
        if callable(arg):
            return ArgKind.CALLBACK
        return None

    def build(self, registry: Optional["Registry"] = None) -> "Listener":
        return Listener.from_args(self, registry)


class Listener:
    """
    A callback waiting for an event.

    ``pattern`` and ``callback`` are fixed at construction. ``once``, ``index``
    and ``runs`` are only changed by the owning bus.
    """

    def __init__(
        self,
        pattern: Pattern,
        callback: ListenerFunc,
        once: bool = False,
        index: int = 0,
        *,
        registry: Optional["Registry"] = None,
    ) -> None:
        check_fields(pattern, callback, once, index)
        self._setup(pattern, callback, once, index, registry)

    @classmethod
    def from_args(cls, args: ListenerArgs, registry: Optional["Registry"] = None) -> "Listener":
        """Build from already validated `ListenerArgs`."""
        listener = cls.__new__(cls)
        listener._setup(args.pattern, args.callback, args.once, args.index, registry)
        return listener

    def _setup(
        self,
        pattern: Pattern,
        callback: ListenerFunc,
        once: bool,
        index: int,
        registry: Optional["Registry"],
    ) -> None:
        self._pattern = pattern
        self._callback = callback
        self.once = once
        self.index = index
        self.runs = 0
        self._registry = registry

    @property
    def pattern(self) -> Pattern:
        return self._pattern

    @property
    def callback(self) -> ListenerFunc:
        return self._callback

    @property
    def is_pattern(self) -> bool:
        """True if this listener was registered with a compiled expression."""
        return not isinstance(self._pattern, str)

    @property
    def name(self) -> str:
        return getattr(self._callback, "__name__", None) or "anonymous"

    def matches(self, event: str) -> bool:
        if self.is_pattern:
            return self._pattern.search(event) is not None
        return self._pattern == event

    def remove(self) -> bool:
        """Remove from the owning registry. False if it was already removed."""
        if self._registry is None:
            return False
        try:
            self._registry.remove(self)
        except ListenerNotFound:
            return False
        return True

    def timeout(
        self, callback: Callable[[], Any], delay: float, cancel_on_fire: bool = False
    ) -> asyncio.TimerHandle:
        """
        Call ``callback`` after ``delay`` seconds unless this listener ran in the meantime.

        Args:
            callback: Called without arguments.
            delay (float): Seconds to wait.
            cancel_on_fire (bool): Also remove this listener when the timer fires.

        Returns:
            asyncio.TimerHandle: Cancel it to disarm the timer.
        """
        baseline = self.runs

        def _fire() -> None:
            if self.runs != baseline:
                return
            if cancel_on_fire:
                self.remove()
            callback()

        return asyncio.get_running_loop().call_later(delay, _fire)

    async def execute(self, call_as: Any, args: Sequence[Any], event: Optional[str] = None) -> Any:
        """
        Run the callback and return its (awaited) result.

        Pattern listeners get ``event`` prepended to ``args``. A ``once``
        listener is removed before the callback runs, so a callback that
        re-emits the same event does not trigger itself. Exceptions from the
        callback propagate to the caller.
        """
        # never run inside the emitting caller's turn
        await asyncio.sleep(0)

        self.runs += 1
        if self.once:
            self.remove()

        if self.is_pattern and event is not None:
            args = (event, *args)

        token = _target.set(call_as)
        try:
            result = self._callback(*args)
            if Outcome.of(result) is Outcome.AWAITABLE:
                result = await result
        finally:
            _target.reset(token)

        if Outcome.of(result) is Outcome.OFF:
            self.remove()
        return result

    def __repr__(self) -> str:
        pattern = self._pattern if isinstance(self._pattern, str) else f"/{self._pattern.pattern}/"
        flags = " once" if self.once else ""
        return f"<Listener event:{pattern} callback:{self.name} index:{self.index}{flags}>"
