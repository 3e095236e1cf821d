from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple


class Decision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class SmartStopTracker:
    """Consecutive-duplicate counter for one source task.

    Fed with the reconciliation outcome of every record, in production order.
    Once ``threshold`` known-and-unchanged records arrive back to back, the
    crawl has most likely reached postings it already holds and ``observe``
    answers STOP. Disabled trackers count but never stop.
    """

    def __init__(self, threshold: int = 50, enabled: bool = True) -> None:
        if threshold < 1:
            raise ValueError("threshold must be >= 1")
        self.threshold = int(threshold)
        self.enabled = bool(enabled)
        self.consecutive = 0
        self.duplicates = 0
        self.observed = 0
        self.triggered = False
        self.last_identity: Optional[Tuple[str, str]] = None

    def observe(self, identity: Tuple[str, str], is_new_or_changed: bool) -> Decision:
        self.observed += 1
        self.last_identity = identity
        if is_new_or_changed:
            self.consecutive = 0
        else:
            self.consecutive += 1
            self.duplicates += 1
        if self.enabled and self.consecutive >= self.threshold:
            self.triggered = True
            return Decision.STOP
        return Decision.CONTINUE

    def reset(self) -> None:
        self.consecutive = 0
        self.triggered = False
