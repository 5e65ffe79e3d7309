from __future__ import annotations

from typing import List

from pixelcentral.queue import Priority, PriorityQueue


def test_high_entries_are_served_before_low_ones() -> None:
    queue = PriorityQueue()
    queue.queue(1, Priority.LOW)
    queue.queue(2, Priority.HIGH)
    queue.queue(3, Priority.LOW)
    queue.queue(4, Priority.HIGH)

    assert [entry.device_id for entry in queue.entries()] == [2, 4, 1, 3]
    snapshot = queue.snapshot()
    assert snapshot.high_priority == [2, 4]
    assert snapshot.low_priority == [1, 3]


def test_raising_priority_moves_entry_to_tail_of_high_tier() -> None:
    queue = PriorityQueue()
    requeued: List[int] = []
    queue.requeued.subscribe(requeued.append)
    queue.queue(1, Priority.HIGH)
    queue.queue(2, Priority.LOW)

    assert queue.queue(2, Priority.HIGH) is True
    assert queue.snapshot().high_priority == [1, 2]
    assert queue.snapshot().low_priority == []
    assert requeued == [2]


def test_same_or_lower_priority_is_a_no_op() -> None:
    queue = PriorityQueue()
    queue.queue(1, Priority.HIGH)
    queue.queue(2, Priority.HIGH)

    assert queue.queue(1, Priority.HIGH) is False
    assert queue.queue(1, Priority.LOW) is False
    assert queue.snapshot().high_priority == [1, 2]
    assert len(queue) == 2


def test_dequeue_and_first_eligible() -> None:
    queue = PriorityQueue()
    dequeued: List[int] = []
    queue.dequeued.subscribe(dequeued.append)
    queue.queue(1, Priority.HIGH)
    queue.queue(2, Priority.LOW)

    entry = queue.first_eligible(lambda device_id: device_id != 1)
    assert entry is not None and entry.device_id == 2
    assert queue.dequeue(1) is Priority.HIGH
    assert queue.dequeue(1) is None
    assert 1 not in queue and 2 in queue
    assert queue.clear() == [2]
    assert dequeued == [1, 2]
    assert queue.snapshot().to_dict() == {"high_priority": [], "low_priority": []}
