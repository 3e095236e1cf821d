from __future__ import annotations

import queue
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional, Union

from ..core.models import RunLogEntry


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.STOPPED, RunState.FAILED)


@dataclass
class ProgressEvent:
    source: str
    current: int
    total: Optional[int]
    new_count: int
    duplicate_count: int
    updated_count: int = 0
    error_count: int = 0
    elapsed_ms: int = 0
    estimated_remaining_ms: Optional[int] = None


@dataclass
class LogEvent:
    message: str
    source: str = ""
    level: str = "INFO"
    event: str = ""


@dataclass
class SummaryEvent:
    state: RunState
    entries: List[RunLogEntry] = field(default_factory=list)
    total_new: int = 0
    total_updated: int = 0
    total_errors: int = 0
    reason: str = ""


Event = Union[ProgressEvent, LogEvent, SummaryEvent]


class EventChannel:
    """Ordered, unbounded event queue between source tasks and the caller."""

    def __init__(self) -> None:
        self._q: "queue.Queue[Event]" = queue.Queue()

    def put(self, event: Event) -> None:
        self._q.put(event)

    def clear(self) -> None:
        while True:
            try:
                self._q.get_nowait()
            except queue.Empty:
                return

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        try:
            return self._q.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self, timeout: Optional[float] = None) -> Iterator[Event]:
        """Yield events until a SummaryEvent (included) or ``timeout`` passes with nothing new."""
        while True:
            event = self.get(timeout=timeout)
            if event is None:
                return
            yield event
            if isinstance(event, SummaryEvent):
                return
