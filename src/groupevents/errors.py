"""
Exceptions raised (or reported) by groupevents.
"""

from __future__ import annotations

from typing import Any, Optional


class GroupEventsError(Exception):
    """Base class for every groupevents error."""


class InvalidArgument(GroupEventsError, TypeError):
    """A call violated its argument contract (bad pattern, missing callback, bad option)."""


class ListenerNotFound(GroupEventsError, LookupError):
    """An explicit listener handle could not be located in the registry."""


class ListenerFailed(GroupEventsError):
    """
    Context error handed to the error sink when a listener raises.

    The original exception is passed next to it, never chained, so the sink
    decides how much of it to log.
    """

    def __init__(self, event: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"A listener for event '{event}' failed.")
        self.event = event


class GroupTimeout(GroupEventsError):
    """A group took longer than ``group_timeout``; dispatch moved on without it."""

    def __init__(self, event: str, group: int, timeout: float, pending: int) -> None:
        super().__init__(
            f"Group {group} for event '{event}' timed out after {timeout}s "
            f"with {pending} listener(s) still running, triggering next group..."
        )
        self.event = event
        self.group = group
        self.timeout = timeout
        self.pending = pending


def describe(value: Any) -> str:
    """Short ``(type)repr`` of any value, for argument error messages."""
    if value is None:
        return "<None>"
    text = repr(value)
    if len(text) > 50:
        text = text[:25] + "..." + text[-25:]
    return f"({type(value).__name__}){text}"
