"""Session lifecycle notifications for best-effort side effects.

Usage counters, experience awards and similar follow-up actions subscribe
here.  Every handler runs under its own timeout; one that raises or hangs
is logged and never affects the session it was notified about.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

from nexus_stream.types import Notification, NotificationType

_logger = logging.getLogger(__name__)

Handler = Callable[[Notification], Any]


class EventBus:
    """Fans notifications out to sync or async handlers concurrently."""

    def __init__(self, handler_timeout: float = 5.0) -> None:
        self.handler_timeout = handler_timeout
        # None collects handlers subscribed to every notification type
        self._handlers: dict[NotificationType | None, list[Handler]] = {}

    def subscribe(self, handler: Handler, *types: NotificationType) -> None:
        """Register *handler* for *types*, or for all notifications if none given."""
        for key in types or (None,):
            self._handlers.setdefault(key, []).append(handler)

    async def publish(self, notification: Notification) -> int:
        """Deliver *notification*; returns the number of handlers that failed."""
        handlers = self._handlers.get(notification.type, []) + self._handlers.get(None, [])
        if not handlers:
            return 0
        results = await asyncio.gather(
            *(self._deliver(h, notification) for h in handlers),
        )
        return results.count(False)

    async def _deliver(self, handler: Handler, notification: Notification) -> bool:
        name = getattr(handler, "__name__", repr(handler))
        try:
            async with asyncio.timeout(self.handler_timeout):
                result = handler(notification)
                if inspect.isawaitable(result):
                    await result
        except TimeoutError:
            _logger.warning(
                "Handler %s timed out after %.1fs on %s for session %s",
                name, self.handler_timeout, notification.type.value, notification.session_id,
            )
            return False
        except Exception:
            _logger.exception(
                "Handler %s raised on %s for session %s",
                name, notification.type.value, notification.session_id,
            )
            return False
        return True
