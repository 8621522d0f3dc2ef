import asyncio
import logging
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Awaitable[Any]]


class EventBus:
    """In-memory pub/sub for workflow events.

    Handlers are registered per event name and dispatched as background tasks,
    so ``publish`` returns as soon as the event is queued. Global subscribers
    receive every event on a queue, for observers that only watch.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}
        self._global_subscribers: set[asyncio.Queue] = set()
        self._tasks: set[asyncio.Task] = set()

    def on(self, name: str, handler: Handler) -> None:
        """Register a handler for events named ``name``."""
        self._handlers.setdefault(name, []).append(handler)

    def subscribe_all(self) -> asyncio.Queue:
        """Subscribe to all events. Returns a queue of {"name", "data"} dicts."""
        queue: asyncio.Queue = asyncio.Queue()
        self._global_subscribers.add(queue)
        return queue

    def unsubscribe_all(self, queue: asyncio.Queue) -> None:
        self._global_subscribers.discard(queue)

    async def publish(self, name: str, data: dict) -> None:
        """Publish an event to its handlers and to all global subscribers."""
        for queue in self._global_subscribers:
            try:
                queue.put_nowait({"name": name, "data": data})
            except asyncio.QueueFull:
                logger.warning("Global event queue full")

        handlers = self._handlers.get(name, [])
        if not handlers:
            logger.debug("No handlers registered for event %s", name)
        for handler in handlers:
            task = asyncio.create_task(self._dispatch(name, handler, data))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, name: str, handler: Handler, data: dict) -> None:
        try:
            await handler(data)
        except Exception:
            logger.exception("Handler %s failed for event %s", getattr(handler, "__name__", handler), name)

    async def drain(self) -> None:
        """Wait until every in-flight handler, including ones they spawn, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
