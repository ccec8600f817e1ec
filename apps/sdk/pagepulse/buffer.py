from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Iterable, List

logger = logging.getLogger(__name__)


class EventBuffer:
    """
    Bounded FIFO of pending items. When full, the oldest items go first so a
    long outage keeps the most recent activity.
    """

    def __init__(self, max_size: int, name: str = "events"):
        self.max_size = max_size
        self.name = name
        self.dropped = 0
        self._items: Deque[Any] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def push(self, item: Any) -> None:
        self._items.append(item)
        self._trim()

    def drain(self) -> List[Any]:
        items = list(self._items)
        self._items.clear()
        return items

    def requeue(self, items: Iterable[Any]) -> None:
        """Puts failed items back at the front, ahead of anything pushed since."""
        self._items.extendleft(reversed(list(items)))
        self._trim()

    def clear(self) -> None:
        self._items.clear()

    def snapshot(self) -> List[Any]:
        return list(self._items)

    def _trim(self) -> None:
        over = len(self._items) - self.max_size
        if over <= 0:
            return
        for _ in range(over):
            self._items.popleft()
        self.dropped += over
        logger.warning("%s buffer full (%d); dropped %d oldest", self.name, self.max_size, over)


class RetryPolicy:
    """Exponential backoff: base, 2*base, 4*base ... capped; reset after a success."""

    def __init__(self, base_ms: int = 1000, max_ms: int = 30000):
        self.base_ms = base_ms
        self.max_ms = max_ms
        self.failures = 0

    def next_delay_ms(self) -> int:
        delay = min(self.max_ms, self.base_ms * (2 ** self.failures))
        self.failures += 1
        return delay

    def reset(self) -> None:
        self.failures = 0
