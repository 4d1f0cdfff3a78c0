from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, Literal, Optional, Set, Tuple

logger = logging.getLogger(__name__)

ChangeKind = Literal["reserved", "released"]


@dataclass(frozen=True)
class AvailabilityChanged:
    court_id: str
    date: str
    slot_keys: Tuple[str, ...]
    kind: ChangeKind


class AvailabilityEvents:
    """Fan-out channel telling subscribers (e.g. UI refreshers) that a day changed.

    Events are published after the transaction commits. Slow subscribers lose
    the oldest pending events rather than blocking publishers.
    """

    def __init__(self, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: Set[asyncio.Queue[AvailabilityChanged]] = set()

    def publish(self, event: AvailabilityChanged) -> None:
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
                logger.warning("availability subscriber lagging, dropped oldest event")
            queue.put_nowait(event)

    def open(self) -> asyncio.Queue[AvailabilityChanged]:
        queue: asyncio.Queue[AvailabilityChanged] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        return queue

    def close(self, queue: asyncio.Queue[AvailabilityChanged]) -> None:
        self._subscribers.discard(queue)

    async def subscribe(
        self,
        court_id: Optional[str] = None,
        *,
        keepalive_seconds: Optional[float] = None,
    ) -> AsyncGenerator[Optional[AvailabilityChanged], None]:
        """Yield events for `court_id`, or for every court when it is None.

        With `keepalive_seconds` set, None is yielded whenever that long passes
        without any event.
        """
        queue = self.open()
        try:
            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
                except asyncio.TimeoutError:
                    yield None
                    continue
                if court_id is None or event.court_id == court_id:
                    yield event
        finally:
            self.close(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
