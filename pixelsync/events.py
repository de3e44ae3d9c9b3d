"""
In-process publish/subscribe channel with typed event payloads.

UI collaborators subscribe to sync events to know when to re-read from the
local store. Several application instances (browser tabs, windows) can share
one channel to propagate session changes between them.
"""
import inspect
import structlog
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field

from pixelsync.database import utc_now


logger = structlog.get_logger()


class Event(BaseModel):
    """Base event."""
    timestamp: str = Field(default_factory=utc_now)
    origin: Optional[str] = None  # id of the publishing instance


class CloudSyncUpdate(Event):
    """Records of one entity were pulled from the remote store."""
    entity_name: str


class CloudSyncComplete(Event):
    """A full sync finished."""


class ForceUIRefresh(Event):
    """Every view should reload from the local store."""


class SessionChanged(Event):
    """The stored session was replaced (session set) or cleared (session None)."""
    session: Optional[Dict[str, Any]] = None


class ConnectivityChanged(Event):
    """Online/offline transition."""
    is_online: bool


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """
    Typed pub/sub channel.

    Handlers may be plain functions or coroutines. A failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: Dict[Type[Event], List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        """Register a handler. Returns a function that removes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    async def publish(self, event: Event) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.error(
                        "event_handler_failed",
                        event=type(event).__name__,
                        error=str(e),
                    )
