"""
Per-emission progress and results.

An `EmitStatus` is created for every emission. Listener states are the only
stored progress; every count and percentage is computed from them on read.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Generator, Iterator, List, NamedTuple, Optional, Tuple

from .listener import Listener
from .registry import GroupedListeners


class ListenerState(str, Enum):
    WAITING = "waiting"
    EXECUTING = "executing"
    FINISHED = "finished"


class ResultItem(NamedTuple):
    """One listener's outcome: success flag, return value or exception, group and position."""

    success: bool
    value: Any
    group: int
    position: int


StatusEntry = Tuple[str, str, int, int]


def _percent(done: int, total: int) -> int:
    if not total:
        return 0
    return round(done / total * 100)


class GroupStatus:
    """States of the listeners sharing one group index."""

    def __init__(self, index: int, listeners: List[Listener]) -> None:
        self.index = index
        self.listeners = list(listeners)
        self.states: List[ListenerState] = [ListenerState.WAITING] * len(self.listeners)

    def __len__(self) -> int:
        return len(self.listeners)

    def __getitem__(self, position: int) -> ListenerState:
        return self.states[position]

    def _count(self, state: ListenerState) -> int:
        return sum(1 for s in self.states if s is state)

    @property
    def waiting(self) -> int:
        return self._count(ListenerState.WAITING)

    @property
    def executing(self) -> int:
        return self._count(ListenerState.EXECUTING)

    @property
    def finished(self) -> int:
        return self._count(ListenerState.FINISHED)

    @property
    def started(self) -> bool:
        return self.waiting < len(self)

    @property
    def remaining(self) -> int:
        return len(self) - self.finished

    @property
    def progress(self) -> int:
        return _percent(self.finished, len(self))

    @property
    def done(self) -> bool:
        return self.finished == len(self)

    @property
    def names(self) -> List[str]:
        return [listener.name for listener in self.listeners]

    def status_entries(self) -> List[StatusEntry]:
        """``(callback name, state, group, position)`` for each listener."""
        return [
            (name, state.value, self.index, j)
            for j, (name, state) in enumerate(zip(self.names, self.states))
        ]

    def __repr__(self) -> str:
        return f"<GroupStatus {self.index} {self.finished}/{len(self)} finished>"


class EmitStatus:
    """
    Progress and results of one emission.

    Passed to ``on_progress`` after every state change, and returned by
    `EventBus.emit_event` when ``return_status`` is on. Awaiting it waits for
    the emission and yields the results.
    """

    def __init__(self, event: str, grouped: GroupedListeners) -> None:
        self.event = event
        self.groups: List[GroupStatus] = [GroupStatus(g, grouped[g]) for g in grouped.ordered()]
        # appended in completion order
        self.results: List[ResultItem] = []
        self.intercepted = False
        self.task: Optional["asyncio.Future[List[ResultItem]]"] = None

    def __len__(self) -> int:
        return sum(len(group) for group in self.groups)

    def __iter__(self) -> Iterator[GroupStatus]:
        return iter(self.groups)

    def __getitem__(self, index: int) -> GroupStatus:
        """The `GroupStatus` for group ``index`` (the group index, not its position)."""
        for group in self.groups:
            if group.index == index:
                return group
        raise KeyError(index)

    def __await__(self) -> Generator[Any, None, List[ResultItem]]:
        if self.task is None:
            raise RuntimeError("emission has not been scheduled")
        return self.task.__await__()

    @property
    def indexes(self) -> List[int]:
        """Group indexes in execution order."""
        return [group.index for group in self.groups]

    @property
    def listeners(self) -> List[Listener]:
        return [listener for group in self.groups for listener in group.listeners]

    def set_state(self, index: int, position: int, state: ListenerState) -> None:
        self[index].states[position] = state

    def get_result(self, index: int, position: int) -> Optional[ResultItem]:
        for result in self.results:
            if result.group == index and result.position == position:
                return result
        return None

    @property
    def waiting(self) -> int:
        return sum(group.waiting for group in self.groups)

    @property
    def executing(self) -> int:
        return sum(group.executing for group in self.groups)

    @property
    def finished(self) -> int:
        return len(self.results)

    @property
    def progress(self) -> int:
        return _percent(self.finished, len(self))

    @property
    def done(self) -> bool:
        return self.finished == len(self)

    @property
    def names(self) -> List[str]:
        return [name for group in self.groups for name in group.names]

    def status_entries(self) -> List[StatusEntry]:
        return [entry for group in self.groups for entry in group.status_entries()]

    @property
    def groups_started(self) -> int:
        return sum(1 for group in self.groups if group.started)

    @property
    def groups_done(self) -> int:
        return sum(1 for group in self.groups if group.done)

    @property
    def groups_executing(self) -> int:
        return sum(1 for group in self.groups if group.started and not group.done)

    @property
    def groups_waiting(self) -> int:
        return len(self.groups) - self.groups_started

    def __repr__(self) -> str:
        state = "intercepted" if self.intercepted else f"{self.progress}%"
        return f"<EmitStatus '{self.event}' groups={self.indexes} {state}>"
