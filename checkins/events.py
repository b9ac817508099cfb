"""
events.py — the one typed event stream the client publishes.

Everything a display needs to react to (connection status, history loaded,
online count, cooldown countdown, new check-ins, relay notices) goes through a
single queue as a frozen dataclass. One consumer loop, no listener lists.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, List, Optional, Union

from .errors import CheckInError
from .messages import CheckIn


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


@dataclass(frozen=True)
class ConnectionChanged:
    state: ConnectionState
    error: Optional[CheckInError] = None


@dataclass(frozen=True)
class HistoryReady:
    """Initial history has (probably) finished arriving; fires once per connect."""


@dataclass(frozen=True)
class OnlineCountChanged:
    count: int


@dataclass(frozen=True)
class CooldownTick:
    remaining: float  # seconds; 0 means submissions are open again


@dataclass(frozen=True)
class CheckInReceived:
    checkin: CheckIn
    changed: bool  # False when the reconciliation buffer ignored it


@dataclass(frozen=True)
class ErrorNotice:
    error: CheckInError


Event = Union[ConnectionChanged, HistoryReady, OnlineCountChanged, CooldownTick, CheckInReceived, ErrorNotice]


class EventStream:
    """Unbounded FIFO of events. `emit` never blocks, consumers `async for`."""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Event]" = asyncio.Queue()

    def emit(self, event: Event) -> None:
        self._queue.put_nowait(event)

    async def get(self) -> Event:
        return await self._queue.get()

    def drain(self) -> List[Event]:
        """Everything queued right now, without waiting."""
        out: List[Event] = []
        while not self._queue.empty():
            out.append(self._queue.get_nowait())
        return out

    def __aiter__(self) -> AsyncIterator[Event]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Event]:
        while True:
            yield await self._queue.get()
