"""
Planification annulable des ticks de polling.

- Scheduler: horloge + call_later (handle annulable)
- AsyncioScheduler: implémentation sur la boucle asyncio courante
- IntervalTask: répétition start/stop/reset; le tick suivant est planifié après la fin du précédent
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

logger = logging.getLogger(__name__)

Callback = Callable[[], Union[None, Awaitable[None]]]


class Handle(Protocol):
    def cancel(self) -> Any:
        ...


class Scheduler(Protocol):
    def now(self) -> float:
        ...

    def call_later(self, delay: float, callback: Callback) -> Handle:
        ...


class _TaskHandle:
    """Annule le timer et, le cas échéant, le callback asynchrone déjà lancé."""

    def __init__(self):
        self.timer: Optional[asyncio.TimerHandle] = None
        self.task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
        if self.task is not None and not self.task.done():
            self.task.cancel()


class AsyncioScheduler:
    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def now(self) -> float:
        return self.loop.time()

    def call_later(self, delay: float, callback: Callback) -> _TaskHandle:
        handle = _TaskHandle()

        def _fire() -> None:
            result = callback()
            if inspect.isawaitable(result):
                handle.task = asyncio.ensure_future(result)

        handle.timer = self.loop.call_later(max(0.0, delay), _fire)
        return handle


class IntervalTask:
    def __init__(self, scheduler: Scheduler, interval: float, callback: Callable[[], Awaitable[None]]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.scheduler = scheduler
        self.interval = interval
        self._callback = callback
        self._handle: Optional[Handle] = None
        self._generation = 0
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._generation += 1
        self._schedule(self._generation)

    def stop(self) -> None:
        self._running = False
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def reset(self, interval: Optional[float] = None) -> None:
        self.stop()
        if interval is not None:
            if interval <= 0:
                raise ValueError("interval must be positive")
            self.interval = interval
        self.start()

    def _schedule(self, generation: int) -> None:
        self._handle = self.scheduler.call_later(self.interval, lambda: self._fire(generation))

    async def _fire(self, generation: int) -> None:
        if not self._running or generation != self._generation:
            return
        # Timer consommé: stop() pendant le callback ne doit pas annuler le tick en cours
        self._handle = None
        try:
            await self._callback()
        finally:
            # stop()/reset() pendant le callback: pas de nouveau tick pour cette génération
            if self._running and generation == self._generation:
                self._schedule(generation)
