"""
In-process event bus for run lifecycle notifications.

Publishers never see subscriber failures: each handler runs in isolation and
errors are logged with the event name.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

RUN_COMPLETED = "run.completed"
RUN_FAILED = "run.failed"

Handler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class EventBus:
    """Publish/subscribe by event name with per-event counters."""

    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)
        self.event_counts: Dict[str, int] = defaultdict(int)
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.last_published_at: Dict[str, datetime] = {}

    def subscribe(self, event: str, handler: Handler):
        self._subscribers[event].append(handler)

    def unsubscribe(self, event: str, handler: Handler):
        if handler in self._subscribers.get(event, []):
            self._subscribers[event].remove(handler)

    async def publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Deliver an event to every subscriber.

        Returns:
            Number of handlers that completed without error
        """
        payload = payload or {}
        self.event_counts[event] += 1
        self.last_published_at[event] = datetime.utcnow()

        delivered = 0
        for handler in list(self._subscribers.get(event, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.error_counts[event] += 1
                logger.exception(f"Event handler {getattr(handler, '__name__', handler)} failed for '{event}'")

        logger.debug(f"Published '{event}' to {delivered} handler(s)")
        return delivered
