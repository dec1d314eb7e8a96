"""In-process domain events.

Management operations announce what they changed (``routing.rule_created``
and friends) so that downstream consumers such as webhook delivery can react
without the routing code knowing about them.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

RULE_CREATED = "routing.rule_created"
RULE_UPDATED = "routing.rule_updated"
RULE_DELETED = "routing.rule_deleted"

EventHandler = Callable[[Dict[str, Any]], Any]


class DomainEventEmitter:
    """
    Publish/subscribe hub for domain events.

    Handlers may be plain functions or coroutine functions. Each one runs
    as its own task, detached from the emitter's caller; a failing handler
    is logged and affects neither the caller nor the other handlers.
    """

    def __init__(self):
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event: str, handler: EventHandler) -> None:
        self._handlers[event].append(handler)

    def unsubscribe(self, event: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def emit(self, event: str, payload: Dict[str, Any]) -> int:
        """
        Dispatch ``payload`` to every handler of ``event``.

        Returns:
            Number of handlers scheduled
        """
        handlers = list(self._handlers.get(event, ()))
        if not handlers:
            return 0

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in handlers:
            if loop is None:
                # no event loop: synchronous handlers run inline, coroutines cannot be scheduled
                if inspect.iscoroutinefunction(handler):
                    logger.warning(f"Dropping async handler for {event}: no running event loop")
                    continue
                self._call_sync(event, handler, payload)
                continue

            task = loop.create_task(self._dispatch(event, handler, payload))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        logger.debug(f"Emitted {event} to {len(handlers)} handler(s)")
        return len(handlers)

    async def drain(self) -> None:
        """Wait until every scheduled handler has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def _call_sync(event: str, handler: EventHandler, payload: Dict[str, Any]) -> None:
        try:
            handler(payload)
        except Exception as e:
            logger.error(f"Event handler for {event} failed: {e}", exc_info=True)

    @staticmethod
    async def _dispatch(event: str, handler: EventHandler, payload: Dict[str, Any]) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Event handler for {event} failed: {e}", exc_info=True)
