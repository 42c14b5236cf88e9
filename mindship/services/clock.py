"""Clock and cancelable timer capability shared by every controller"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

logger = logging.getLogger(__name__)

class Timer:
    """Cancelable handle for one scheduled callback"""

    def __init__(self, callback: Callable[..., Any], *args: Any):
        self._callback = callback
        self._args = args
        self._handle: Optional[Any] = None
        self.fired = False
        self.cancelled = False

    def bind(self, handle: Any) -> "Timer":
        """Attach the underlying scheduler handle"""
        self._handle = handle
        return self

    @property
    def active(self) -> bool:
        return not (self.fired or self.cancelled)

    def cancel(self) -> None:
        """Cancel the callback; no-op once fired or cancelled"""
        if not self.active:
            return
        self.cancelled = True
        if self._handle is not None:
            self._handle.cancel()

    def run(self) -> None:
        """Invoke the callback once"""
        if not self.active:
            return
        self.fired = True
        try:
            self._callback(*self._args)
        except Exception as e:
            # A failing callback must not take down the event loop
            logger.error(f"Timer callback {self._callback!r} failed: {e}", exc_info=True)

class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Timer:
        ...

    async def sleep(self, delay: float) -> None:
        ...

class AsyncioClock:
    """Wall clock backed by the running asyncio event loop"""

    def now(self) -> datetime:
        return datetime.now()

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> Timer:
        timer = Timer(callback, *args)
        loop = asyncio.get_running_loop()
        return timer.bind(loop.call_later(max(0.0, delay), timer.run))

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

def cancel_timer(timer: Optional[Timer]) -> None:
    """Cancel a possibly-missing timer"""
    if timer is not None:
        timer.cancel()
