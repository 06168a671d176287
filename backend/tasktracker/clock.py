from __future__ import annotations

import asyncio
import datetime as dt
from typing import Callable, Optional

from typing_extensions import Protocol

from .utils import truncate_ms


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    """Source of wall-clock time and delayed callbacks."""

    def now(self) -> dt.datetime: ...

    def call_later(self, delay: float, callback: Callable[[], None]) -> Cancellable: ...


class SystemClock:
    """Local wall-clock time with callbacks on the running asyncio loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    def now(self) -> dt.datetime:
        return truncate_ms(dt.datetime.now())

    def call_later(self, delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(delay, callback)
