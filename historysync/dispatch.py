import asyncio
import logging
from typing import Any, Callable, Coroutine, Optional, Set

logger = logging.getLogger(__name__)


class TaskDispatcher:
    """
    Runs coroutines in the background on the owning event loop and posts
    callbacks back to it. Spawned tasks are referenced until they finish.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._tasks: Set[asyncio.Task] = set()

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def run_async(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = self.loop.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def post_to_owner(self, callback: Callable[..., Any], *args: Any):
        self.loop.call_soon_threadsafe(self._invoke, callback, args)

    @staticmethod
    def _invoke(callback: Callable[..., Any], args: tuple):
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Callback {getattr(callback, '__name__', callback)!r} raised: {e}", exc_info=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every spawned task to finish and for the callbacks they posted to run."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await asyncio.sleep(0)
