import asyncio, json, logging
from typing import AsyncIterator, Set, Any

log = logging.getLogger(__name__)


class EventBroadcaster:
    """Fan-out of engine events to connected SSE clients."""

    def __init__(self, max_queue: int = 100):
        self._queues: Set[asyncio.Queue] = set()
        self._max_queue = max_queue

    async def subscribe(self) -> AsyncIterator[str]:  # pragma: no cover (async generator)
        q: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._queues.add(q)
        try:
            while True:
                msg = await q.get()
                yield msg
        finally:
            self._queues.discard(q)

    @property
    def subscribers(self) -> int:
        return len(self._queues)

    def publish(self, event: str, data: Any):
        if not isinstance(data, str):
            data = json.dumps(data, default=str)
        payload = f"event: {event}\ndata: {data}\n\n"
        for q in list(self._queues):
            if not q.full():
                q.put_nowait(payload)
            else:
                log.debug("sse_queue_full", extra={"reason": event})

broadcaster = EventBroadcaster()
