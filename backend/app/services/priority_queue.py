import heapq, itertools, threading
from dataclasses import dataclass, field
from typing import List, Iterator, Optional

from .taxonomy import Priority

@dataclass(order=True)
class PrioritizedEmail:
    priority_rank: int
    seq: int
    email_id: int = field(compare=False)
    tenant_id: str = field(compare=False, default='default')
    attempts: int = field(compare=False, default=0)

class EmailPriorityQueue:
    """Heap of pending email ids; urgent first, FIFO within a priority."""

    def __init__(self):
        self._heap: List[PrioritizedEmail] = []
        self._lock = threading.Lock()
        self._counter = itertools.count()

    def push(self, email_id: int, priority, tenant_id: str = 'default', attempts: int = 0):
        rank = Priority.coerce(priority).rank
        with self._lock:
            heapq.heappush(self._heap, PrioritizedEmail(rank, next(self._counter), email_id, tenant_id, attempts))

    def pop(self) -> Optional[PrioritizedEmail]:
        with self._lock:
            if not self._heap:
                return None
            return heapq.heappop(self._heap)

    def __len__(self):
        return len(self._heap)

    def __iter__(self) -> Iterator[PrioritizedEmail]:
        with self._lock:
            return iter(sorted(self._heap))
