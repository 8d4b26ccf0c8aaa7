"""
Emitter configuration.

`EmitterOptions` is the validated record a bus is constructed with. A subset
of it can be overridden for a single emission with `EmitterOptions.merged`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Callable, Mapping, Optional, Tuple, Union

from .errors import GroupTimeout, InvalidArgument, describe
from .listener import Listener
from .registry import GroupedListeners

logger = logging.getLogger(__name__)

EMIT_AS_CHOICES = ("this", "global", "empty")

ErrorSink = Callable[[BaseException, dict, Optional[BaseException]], Any]
ProgressFunc = Callable[..., Any]


def log_error(
    context_error: BaseException,
    details: Optional[dict] = None,
    original: Optional[BaseException] = None,
    *,
    log: Any = None,
) -> None:
    """
    Default error sink. Group timeouts are warnings, everything else is an error.

    Args:
        context_error (BaseException): What went wrong, from the bus's point of view.
        details (dict, optional): Listener, arguments and options involved.
        original (BaseException, optional): The exception raised by the listener.
        log (optional): Logger to write to. Defaults to this module's logger.
    """
    log = log or logger
    if details:
        message, params = "%s %s", (context_error, details)
    else:
        message, params = "%s", (context_error,)
    if isinstance(context_error, GroupTimeout):
        log.warning(message, *params)
    else:
        log.error(message, *params, exc_info=original)


def callbacks_of(exclude: Any) -> Tuple[Callable[..., Any], ...]:
    """Normalize a listener, a callback or a list of them to a tuple of callbacks."""
    if exclude is None:
        return ()
    if isinstance(exclude, Listener):
        return (exclude.callback,)
    if callable(exclude):
        return (exclude,)
    if isinstance(exclude, (list, tuple, set, frozenset)):
        out = []
        for item in exclude:
            if isinstance(item, Listener):
                out.append(item.callback)
            elif callable(item):
                out.append(item)
            else:
                raise InvalidArgument(
                    "Option 'exclude' should be a listener or a list of listeners, "
                    f"got item: {describe(item)}"
                )
        return tuple(out)
    raise InvalidArgument(
        f"Option 'exclude' should be a listener or a list of listeners, got: {describe(exclude)}"
    )


@dataclass
class EmitterOptions:
    """
    Options for an `EventBus`, and one-time overrides for a single emission.

    Durations are in seconds. A zero ``group_timeout`` waits for every group
    indefinitely, a zero ``group_delay`` starts the next group right away.
    """

    group_timeout: float = 0
    group_delay: float = 0
    default_index: int = 0
    on_progress: Optional[ProgressFunc] = None
    return_status: bool = True
    allow_duplicates: bool = False
    emit_as: Any = "this"
    exclude: Any = ()
    on_error: Optional[ErrorSink] = None
    listeners: Optional[GroupedListeners] = None
    log: Any = None

    def __post_init__(self) -> None:
        for name in ("group_timeout", "group_delay"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise InvalidArgument(
                    f"Option '{name}' should be a non-negative number, got: {describe(value)}"
                )

        if isinstance(self.default_index, bool) or not isinstance(self.default_index, int):
            raise InvalidArgument(
                f"Option 'default_index' should be an int, got: {describe(self.default_index)}"
            )

        for name in ("return_status", "allow_duplicates"):
            value = getattr(self, name)
            if not isinstance(value, bool):
                raise InvalidArgument(f"Option '{name}' should be a bool, got: {describe(value)}")

        for name in ("on_progress", "on_error"):
            value = getattr(self, name)
            if value is not None and not callable(value):
                raise InvalidArgument(
                    f"Option '{name}' should be a function, got: {describe(value)}"
                )

        if self.emit_as is None or (
            isinstance(self.emit_as, str) and self.emit_as not in EMIT_AS_CHOICES
        ):
            raise InvalidArgument(
                f"Option 'emit_as' should be one of {'|'.join(EMIT_AS_CHOICES)} or an object, "
                f"got: {describe(self.emit_as)}"
            )

        if self.listeners is not None and not isinstance(self.listeners, GroupedListeners):
            raise InvalidArgument(
                "Option 'listeners' should be the object returned from "
                f"EventBus.listeners_for_emit(), got: {describe(self.listeners)}"
            )

        if self.log is not None and not all(
            callable(getattr(self.log, level, None)) for level in ("debug", "warning", "error")
        ):
            raise InvalidArgument(f"Option 'log' should be a logger, got: {describe(self.log)}")

        self.exclude = callbacks_of(self.exclude)

    def merged(
        self, overrides: Union["EmitterOptions", Mapping[str, Any], None] = None, **kwargs: Any
    ) -> "EmitterOptions":
        """
        Return a copy of these options with ``overrides`` (and ``kwargs``) laid on top.

        From a mapping every key is applied. From an `EmitterOptions` only the
        fields that differ from the defaults are applied.

        Raises:
            InvalidArgument: On an unknown option name or an invalid value.
        """
        known = {f.name for f in fields(self)}
        if isinstance(overrides, EmitterOptions):
            # only what was set; an EmitterOptions cannot reset a field to its default
            defaults = EmitterOptions()
            changes = {
                name: getattr(overrides, name)
                for name in known
                if getattr(overrides, name) != getattr(defaults, name)
            }
        elif overrides is None:
            changes = {}
        elif isinstance(overrides, Mapping):
            changes = dict(overrides)
        else:
            raise InvalidArgument(
                f"One-time options should be a mapping or EmitterOptions, got: {describe(overrides)}"
            )
        changes.update(kwargs)

        unknown = sorted(set(changes) - known)
        if unknown:
            raise InvalidArgument(f"Unknown option(s): {', '.join(unknown)}")
        if not changes:
            return self
        return replace(self, **changes)
