import asyncio
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Optional

from corrpy.kernel.system.logging import get_logger

logger = get_logger(__name__)


class EventLoopThread:
    """
    Owns one asyncio loop running on a daemon thread.
    Coroutines can be scheduled from any thread.
    """

    def __init__(self, name: str = "corrpy-loop") -> None:
        self._name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise RuntimeError(f"{self._name} is not running")
        return self._loop

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "EventLoopThread":
        if self.is_running:
            return self
        self._ready.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        self._ready.wait()
        return self

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.close()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> "Future[Any]":
        if not self.is_running:
            coro.close()
            raise RuntimeError(f"{self._name} is not running")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if not self.is_running or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        assert self._thread is not None
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"{self._name}: loop thread did not stop within {timeout}s")
        self._thread = None
        self._loop = None
