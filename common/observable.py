"""Observable value holder used for state published to the host."""

import asyncio
from typing import AsyncIterator, Generic, List, TypeVar

T = TypeVar("T")


class StateStream(Generic[T]):
    """
    Holds the latest value and notifies subscribers of changes.

    Subscribers receive the current value first, then every distinct update.
    Slow subscribers are conflated: they always see the newest value but may
    skip intermediate ones.
    """

    def __init__(self, initial: T):
        self._value = initial
        self._subscribers: List[asyncio.Queue] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for queue in self._subscribers:
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(value)

    async def subscribe(self) -> AsyncIterator[T]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        queue.put_nowait(self._value)
        self._subscribers.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.remove(queue)
