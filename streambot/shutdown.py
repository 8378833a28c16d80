from __future__ import annotations
import asyncio
import enum
import logging
import signal
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


class ShutdownSignal:
    """Write-once cancellation flag shared by every loop in the process."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def set(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for the signal, at most ``timeout`` seconds. Returns whether it is set."""
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self._event.is_set()


class Stoppable(Protocol):
    should_exit: bool


class ShutdownState(enum.Enum):
    RUNNING = 'running'
    SHUTTING_DOWN = 'shutting_down'
    STOPPED = 'stopped'


class ShutdownCoordinator:
    def __init__(self, signal_: ShutdownSignal, listener: Optional[Stoppable] = None):
        self.signal = signal_
        self.listener = listener
        self.state = ShutdownState.RUNNING

    def trigger(self, reason: str = 'interrupt') -> bool:
        """Enter SHUTTING_DOWN. Only the first call has any effect."""
        if self.state is not ShutdownState.RUNNING:
            return False
        self.state = ShutdownState.SHUTTING_DOWN
        logger.info('Shutting down (%s)', reason)
        if self.listener is not None:
            # uvicorn finishes in-flight requests and stops accepting on its next tick
            self.listener.should_exit = True
        self.signal.set()
        return True

    def finish(self) -> None:
        self.state = ShutdownState.STOPPED

    async def watch(self, interrupt: Optional[asyncio.Event] = None) -> None:
        """Wait for an interrupt (or for the signal set elsewhere), then trigger."""
        interrupt = interrupt or install_interrupt_handlers()
        interrupted = asyncio.ensure_future(interrupt.wait())
        stopped = asyncio.ensure_future(self.signal.wait())
        try:
            done, _ = await asyncio.wait({interrupted, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for fut in (interrupted, stopped):
                if not fut.done():
                    fut.cancel()
        if interrupted in done:
            self.trigger('interrupt')


def install_interrupt_handlers(loop: Optional[asyncio.AbstractEventLoop] = None) -> asyncio.Event:
    loop = loop or asyncio.get_running_loop()
    interrupt = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, interrupt.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no add_signal_handler
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(interrupt.set))
    return interrupt
