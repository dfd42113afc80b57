"""
Cancellable asyncio timers.

Every delayed or periodic piece of work in a session (speed decay, warning
debounce, the feedback loop, reconnect backoff) goes through one of these two
classes so the SessionManager can tear all of it down on stop().
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Union

log = logging.getLogger("coach_engine.timers")

TimerCallback = Callable[[], Union[None, Awaitable[None]]]


async def _invoke(callback: TimerCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class OneShotTimer:
    """Run ``callback`` once, ``delay`` seconds after start(), unless cancelled."""

    def __init__(self, delay: float, callback: TimerCallback, *, name: str = "timer"):
        self.delay = delay
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Arm the timer.  A timer that is already armed keeps its deadline."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    def restart(self) -> None:
        self.cancel()
        self.start()

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            log.debug("event=timer_cancel name=%s", self.name)
        self._task = None

    async def _run(self) -> None:
        await asyncio.sleep(self.delay)
        # Detach first so the callback may re-arm this timer.
        self._task = None
        try:
            await _invoke(self._callback)
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("event=timer_callback_error name=%s", self.name)


class Ticker:
    """Run ``callback`` every ``interval`` seconds until cancelled.

    A failing callback is logged and the ticker keeps going.
    """

    def __init__(self, interval: float, callback: TimerCallback, *, name: str = "ticker"):
        self.interval = interval
        self.name = name
        self._callback = callback
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self.ticks = 0
        self._task = asyncio.create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            log.debug("event=ticker_cancel name=%s ticks=%d", self.name, self.ticks)
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.ticks += 1
            try:
                await _invoke(self._callback)
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("event=ticker_callback_error name=%s tick=%d", self.name, self.ticks)
