"""Two-tier FIFO connection queue."""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from enum import Enum
from time import monotonic
from typing import Callable, Deque, Dict, Iterable, List, Optional

from pixelcentral.events import EventChannel


class Priority(str, Enum):
    HIGH = "high"
    LOW = "low"

    @property
    def rank(self) -> int:
        return 1 if self is Priority.HIGH else 0


@dataclass(slots=True)
class QueueEntry:
    device_id: int
    priority: Priority
    enqueued_at: float


@dataclass(slots=True, frozen=True)
class ConnectQueue:
    """Snapshot of both tiers, oldest first."""

    high_priority: List[int]
    low_priority: List[int]

    def to_dict(self) -> Dict[str, List[int]]:
        return {"high_priority": list(self.high_priority), "low_priority": list(self.low_priority)}


class PriorityQueue:
    """Device ids waiting for a connection slot.

    A device sits in at most one tier. Queuing an id again at a higher
    priority moves it to the tail of that tier; queuing it at the same or a
    lower priority leaves it where it is.
    """

    def __init__(self, clock: Callable[[], float] = monotonic) -> None:
        self._clock = clock
        self._tiers: Dict[Priority, Deque[QueueEntry]] = {
            Priority.HIGH: deque(),
            Priority.LOW: deque(),
        }
        self.queued: EventChannel[int] = EventChannel("queued")
        self.requeued: EventChannel[int] = EventChannel("requeued")
        self.dequeued: EventChannel[int] = EventChannel("dequeued")

    def __len__(self) -> int:
        return len(self._tiers[Priority.HIGH]) + len(self._tiers[Priority.LOW])

    def __contains__(self, device_id: object) -> bool:
        return self.find(device_id) is not None  # type: ignore[arg-type]

    def find(self, device_id: int) -> Optional[QueueEntry]:
        for tier in self._tiers.values():
            for entry in tier:
                if entry.device_id == device_id:
                    return entry
        return None

    def priority_of(self, device_id: int) -> Optional[Priority]:
        entry = self.find(device_id)
        return entry.priority if entry else None

    def queue(self, device_id: int, priority: Priority) -> bool:
        """Queue ``device_id``; return True if the queue changed."""
        entry = self.find(device_id)
        if entry is None:
            self._tiers[priority].append(QueueEntry(device_id, priority, self._clock()))
            self.queued.emit(device_id)
            return True
        if priority.rank <= entry.priority.rank:
            return False
        self._tiers[entry.priority].remove(entry)
        entry.priority = priority
        entry.enqueued_at = self._clock()
        self._tiers[priority].append(entry)
        self.requeued.emit(device_id)
        return True

    def dequeue(self, device_id: int) -> Optional[Priority]:
        entry = self.find(device_id)
        if entry is None:
            return None
        self._tiers[entry.priority].remove(entry)
        self.dequeued.emit(device_id)
        return entry.priority

    def entries(self, priority: Optional[Priority] = None) -> List[QueueEntry]:
        """Entries in service order: every high entry before any low one."""
        if priority is not None:
            return list(self._tiers[priority])
        return [*self._tiers[Priority.HIGH], *self._tiers[Priority.LOW]]

    def first_eligible(self, eligible: Callable[[int], bool]) -> Optional[QueueEntry]:
        for entry in self.entries():
            if eligible(entry.device_id):
                return entry
        return None

    def snapshot(self) -> ConnectQueue:
        return ConnectQueue(
            high_priority=[entry.device_id for entry in self._tiers[Priority.HIGH]],
            low_priority=[entry.device_id for entry in self._tiers[Priority.LOW]],
        )

    def clear(self) -> List[int]:
        removed = [entry.device_id for entry in self.entries()]
        for tier in self._tiers.values():
            tier.clear()
        for device_id in removed:
            self.dequeued.emit(device_id)
        return removed

    def ids(self) -> Iterable[int]:
        return (entry.device_id for entry in self.entries())


__all__ = ["Priority", "QueueEntry", "ConnectQueue", "PriorityQueue"]
