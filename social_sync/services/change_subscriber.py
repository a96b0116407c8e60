import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

from social_sync.schemas.change_event import ChangeEvent
from social_sync.utils.realtime_bus import EventHandler


logger = logging.getLogger(__name__)


class ChangeSubscriber:
    """Owns bus subscriptions by scope.

    A scope (e.g. ``"messages:open"``) holds at most one live subscription;
    subscribing again on the same scope tears the previous one down first so
    events are never delivered twice.
    """

    def __init__(self, bus) -> None:
        self._bus = bus
        self._scopes: Dict[str, Tuple[Any, asyncio.Task]] = {}

    async def subscribe(self, scope: str, table: str, handler: EventHandler, filters: Optional[Dict[str, Any]] = None) -> None:
        await self.unsubscribe(scope)

        async def deliver(event: ChangeEvent) -> None:
            try:
                await handler(event)
            except Exception:
                logger.exception("Change handler for scope %s failed on %s %s", scope, event.type, event.table)

        subscription = await self._bus.subscribe(table, deliver, filters)
        task = asyncio.create_task(subscription.run())
        self._scopes[scope] = (subscription, task)
        logger.debug("Subscribed scope %s to %s %s", scope, table, filters or {})

    async def unsubscribe(self, scope: str) -> None:
        entry = self._scopes.pop(scope, None)
        if entry is None:
            return
        subscription, task = entry
        await subscription.cancel()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        logger.debug("Unsubscribed scope %s", scope)

    def is_subscribed(self, scope: str) -> bool:
        return scope in self._scopes

    async def close(self) -> None:
        for scope in list(self._scopes):
            await self.unsubscribe(scope)
