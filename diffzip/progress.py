"""
Structured progress reporting for backup and restore passes.

Orchestrators emit ProgressEvent objects to an optional callback. The host
keeps the latest event per key in a ProgressTracker and decides how often to
show them.
"""

import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional


@dataclass
class ProgressEvent:
    phase: str
    key: str
    message: str
    processed: int = 0
    total: int = 0
    path: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return asdict(self)


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressTracker:
    """Thread-safe store of the most recent event for each key."""

    def __init__(self):
        self._events: Dict[str, ProgressEvent] = {}
        self._lock = threading.Lock()

    def __call__(self, event: ProgressEvent):
        self.update(event)

    def update(self, event: ProgressEvent):
        with self._lock:
            self._events[event.key] = event

    def get(self, key: str) -> Optional[ProgressEvent]:
        with self._lock:
            return self._events.get(key)

    def snapshot(self) -> List[dict]:
        with self._lock:
            events = list(self._events.values())
        return [e.to_dict() for e in events]

    def clear(self):
        with self._lock:
            self._events.clear()
