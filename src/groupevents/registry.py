"""
Listener storage: exact names, compiled patterns and the catch-all.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Union

from .errors import InvalidArgument, ListenerNotFound, describe
from .listener import Listener, ListenerFunc, Pattern, is_pattern

# Matches every event name; used for the catch-all listener
MATCH_ANY = re.compile("")


class GroupedListeners(Dict[int, List[Listener]]):
    """
    Listeners for one emission, keyed by group index.

    Built by `EventBus.listeners_for_emit`; pass it back as the ``listeners``
    option to fix the listener set of a later emission.
    """

    def ordered(self) -> List[int]:
        return sorted(self)


def _same_pattern(a: Pattern, b: Pattern) -> bool:
    if isinstance(a, str) or isinstance(b, str):
        return a == b
    return a.pattern == b.pattern and a.flags == b.flags


class Registry:
    """
    Owns the listeners of one bus.

    Exact-name listeners live in a dict of lists (registration order), pattern
    listeners in a single list. The catch-all runs only when nothing else
    matches.
    """

    def __init__(self) -> None:
        self.exact: Dict[str, List[Listener]] = {}
        self.patterns: List[Listener] = []
        self.catch_all: Optional[Listener] = None

    def add(self, listener: Listener) -> Listener:
        if not isinstance(listener, Listener):
            raise InvalidArgument(f"Expected a Listener, got: {describe(listener)}")
        listener._registry = self
        if listener.is_pattern:
            self.patterns.append(listener)
        else:
            self.exact.setdefault(listener.pattern, []).append(listener)
        return listener

    def set_catch_all(self, callback: Union[ListenerFunc, bool, None]) -> Optional[Listener]:
        """
        Replace the catch-all. ``False`` or ``None`` clears it.
        """
        if callback is False or callback is None:
            self.catch_all = None
            return None
        if not callable(callback):
            raise InvalidArgument(f"Arg #1 should be a listener function, got: {describe(callback)}")
        self.catch_all = Listener(MATCH_ANY, callback, registry=self)
        return self.catch_all

    def _bucket(self, pattern: Pattern) -> List[Listener]:
        if isinstance(pattern, str):
            return self.exact.get(pattern, [])
        return self.patterns

    def remove(
        self, target: Union[Listener, ListenerFunc], pattern: Optional[Pattern] = None
    ) -> Optional[Listener]:
        """
        Remove one listener.

        With a `Listener` handle that exact object is removed and
        `ListenerNotFound` is raised if it is not registered. With a callback,
        the first listener for ``pattern`` using it is removed and None is
        returned if there is none.
        """
        if isinstance(target, Listener):
            if target is self.catch_all:
                self.catch_all = None
                return target
            bucket = self._bucket(target.pattern)
            for i, listener in enumerate(bucket):
                if listener is target:
                    del bucket[i]
                    self._prune(target.pattern)
                    return target
            raise ListenerNotFound(f"{target!r} is not registered")

        if not callable(target):
            raise InvalidArgument(f"Arg #1 should be a listener function, got: {describe(target)}")
        if not is_pattern(pattern):
            raise InvalidArgument(
                f"Arg #2 should be a string or compiled pattern event, got: {describe(pattern)}"
            )

        bucket = self._bucket(pattern)
        for i, listener in enumerate(bucket):
            if listener.callback == target and _same_pattern(listener.pattern, pattern):
                del bucket[i]
                self._prune(pattern)
                return listener

        if self.catch_all is not None and self.catch_all.callback == target:
            removed, self.catch_all = self.catch_all, None
            return removed
        return None

    def remove_everywhere(self, callback: ListenerFunc) -> List[Pattern]:
        """Remove every listener using ``callback``; return the patterns it was removed from."""
        if not callable(callback):
            raise InvalidArgument(f"Arg #1 should be a listener function, got: {describe(callback)}")

        removed: List[Pattern] = []
        for name in list(self.exact):
            kept = []
            for listener in self.exact[name]:
                if listener.callback == callback:
                    removed.append(name)
                else:
                    kept.append(listener)
            self.exact[name] = kept
            self._prune(name)

        kept = []
        for listener in self.patterns:
            if listener.callback == callback:
                removed.append(listener.pattern)
            else:
                kept.append(listener)
        self.patterns = kept

        if self.catch_all is not None and self.catch_all.callback == callback:
            removed.append(self.catch_all.pattern)
            self.catch_all = None
        return removed

    def remove_event(self, pattern: Pattern) -> List[Listener]:
        """
        Remove all listeners registered with exactly ``pattern``.

        A compiled pattern only removes pattern listeners with the same
        expression; exact-name listeners it would match are left alone.
        """
        if isinstance(pattern, str):
            return self.exact.pop(pattern, [])
        if not isinstance(pattern, re.Pattern):
            raise InvalidArgument(
                f"Arg #1 should be a string or compiled pattern event, got: {describe(pattern)}"
            )
        removed = [l for l in self.patterns if _same_pattern(l.pattern, pattern)]
        self.patterns = [l for l in self.patterns if not _same_pattern(l.pattern, pattern)]
        return removed

    def _prune(self, name: Pattern) -> None:
        if isinstance(name, str) and name in self.exact and not self.exact[name]:
            del self.exact[name]

    def lookup(self, pattern: Pattern) -> List[Listener]:
        """
        Listeners relevant to ``pattern``.

        For a name: the listeners registered for it, then every pattern
        listener whose expression matches it. For a compiled pattern: every
        exact-name listener whose name it matches.
        """
        if isinstance(pattern, str):
            found = list(self.exact.get(pattern, []))
            found.extend(l for l in self.patterns if l.matches(pattern))
            return found
        if isinstance(pattern, re.Pattern):
            found = []
            for name, listeners in self.exact.items():
                if pattern.search(name):
                    found.extend(listeners)
            return found
        raise InvalidArgument(
            f"Arg #1 should be a string or compiled pattern event, got: {describe(pattern)}"
        )

    def events(self, regex: Optional["re.Pattern[str]"] = None) -> List[Pattern]:
        """
        Registered exact names matching ``regex``, or all names and distinct patterns.
        """
        if regex is None:
            out: List[Pattern] = list(self.exact)
            for listener in self.patterns:
                if not any(_same_pattern(listener.pattern, p) for p in out):
                    out.append(listener.pattern)
            return out
        if not isinstance(regex, re.Pattern):
            raise InvalidArgument(f"Arg #1 should be a compiled pattern or None, got: {describe(regex)}")
        return [name for name in self.exact if regex.search(name)]

    def all(self) -> Iterable[Listener]:
        for listeners in self.exact.values():
            yield from listeners
        yield from self.patterns

    def clear(self) -> None:
        self.exact = {}
        self.patterns = []
        self.catch_all = None


def first_per_callback(listeners: Iterable[Listener]) -> List[Listener]:
    """
    Keep the first listener for each distinct callback, in first-seen order.

    Callbacks are compared with ``==`` so that two accesses to the same bound
    method count as one callback.
    """
    out: List[Listener] = []
    for listener in listeners:
        if any(kept.callback == listener.callback for kept in out):
            continue
        out.append(listener)
    return out
