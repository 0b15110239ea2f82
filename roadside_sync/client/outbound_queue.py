"""
MODULE OVERVIEW:
Messages the app tried to send while the push channel was down.

WHAT IS HAPPENING HERE:
A plain FIFO. The ConnectionManager appends while offline and pops from the head while
draining after an open. If a transmission fails mid-drain the envelope goes back to
the head, so nothing is lost or reordered.
"""
from collections import deque

from loguru import logger

from roadside_sync.shared.models import Envelope


class OutboundQueue:
    def __init__(self, maxsize: int = 0):
        # 0 means unbounded
        self.maxsize = maxsize
        self._items: deque[Envelope] = deque()
        self.dropped = 0

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def push(self, envelope: Envelope) -> None:
        if self.maxsize and len(self._items) >= self.maxsize:
            oldest = self._items.popleft()
            self.dropped += 1
            logger.warning(f"queue=outbound event=dropped reason=queue_full type={oldest.type}")
        self._items.append(envelope)

    def pop(self) -> Envelope:
        return self._items.popleft()

    def push_front(self, envelope: Envelope) -> None:
        self._items.appendleft(envelope)

    def snapshot(self) -> list[Envelope]:
        return list(self._items)

    def clear(self) -> None:
        self._items.clear()
