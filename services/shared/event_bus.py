"""In-process publish/subscribe bus.

Delivery is at-most-once and nothing is persisted: an event published while
the bus is not bound to a running loop, or while nobody is subscribed to it,
is dropped. Cross-process events travel over Redis Streams
(:mod:`shared.event_consumer`) and are bridged into this bus by the consuming
service.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from concurrent.futures import Future
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


BusHandler = Callable[[str, Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """Process-wide fan-out from producers (route handlers) to consumers.

    Handlers for one event run one after the other, in registration order.
    A failing handler is logged and never interrupts its siblings or the
    publisher.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[BusHandler]] = defaultdict(list)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: set = set()

    def subscribe(self, event_name: str, handler: BusHandler) -> None:
        """Register a handler (plain or ``async``) for ``event_name``."""
        if not callable(handler):
            raise TypeError(f"Handler must be callable, got {type(handler)}")
        self._handlers[event_name].append(handler)
        logger.info("Subscribed %s to event '%s'", getattr(handler, "__name__", handler), event_name)

    def handlers_for(self, event_name: str) -> List[BusHandler]:
        return list(self._handlers.get(event_name, ()))

    def bind(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Attach the bus to the loop that will run the handlers."""
        self._loop = loop or asyncio.get_running_loop()

    def unbind(self) -> None:
        self._loop = None

    async def dispatch(self, event_name: str, payload: Dict[str, Any]) -> int:
        """Run every handler for ``event_name`` and wait for all of them.

        Returns the number of handlers that completed without raising.
        """
        handlers = self.handlers_for(event_name)
        if not handlers:
            logger.debug("No handler subscribed to event '%s'", event_name)
            return 0

        completed = 0
        for handler in handlers:
            try:
                result = handler(event_name, payload)
                if inspect.isawaitable(result):
                    await result
                completed += 1
            except Exception:
                logger.exception(
                    "Handler %s failed for event '%s'",
                    getattr(handler, "__name__", handler),
                    event_name,
                )
        return completed

    def publish(self, event_name: str, payload: Dict[str, Any]) -> Optional[Union[asyncio.Task, Future]]:
        """Schedule :meth:`dispatch` and return without waiting.

        Safe to call from the loop thread (e.g. an ``async`` endpoint) or from
        a worker thread (e.g. a sync endpoint run in the threadpool).
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning("Event bus not running, dropping event '%s'", event_name)
            return None
        if not self._handlers.get(event_name):
            logger.debug("No handler subscribed to event '%s', dropping it", event_name)
            return None

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            task = loop.create_task(self.dispatch(event_name, payload))
            # keep a strong reference until the task finishes
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            return task

        return asyncio.run_coroutine_threadsafe(self.dispatch(event_name, payload), loop)

    async def drain(self) -> None:
        """Wait for every in-flight dispatch scheduled from the loop thread."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
