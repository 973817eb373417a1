"""
Typed session events and the subscription plumbing that carries them.

Connections and players publish events through an EventEmitter. The
reconciler subscribes with a callback that only enqueues, so every event for
one tenant is processed by a single consumer in emission order.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable, ClassVar, List, Optional, Union

from guildvoice.core.models import ConnectionStatus, PlayerStatus
from guildvoice.logging_config import get_logger

logger = get_logger(__name__)


class EventKind(str, Enum):
    CONNECTION_CHANGED = "connection_changed"
    PLAYER_CHANGED = "player_changed"
    PLAYER_ERROR = "player_error"


@dataclass(frozen=True)
class ConnectionChanged:
    tenant_id: str
    old: ConnectionStatus
    new: ConnectionStatus
    kind: ClassVar[EventKind] = EventKind.CONNECTION_CHANGED


@dataclass(frozen=True)
class PlayerChanged:
    tenant_id: str
    old: PlayerStatus
    new: PlayerStatus
    # IDLE reached through an explicit stop()
    requested: bool = False
    # IDLE reached right after a PlayerError
    errored: bool = False
    kind: ClassVar[EventKind] = EventKind.PLAYER_CHANGED


@dataclass(frozen=True)
class PlayerError:
    tenant_id: str
    error: BaseException
    kind: ClassVar[EventKind] = EventKind.PLAYER_ERROR


SessionEvent = Union[ConnectionChanged, PlayerChanged, PlayerError]
EventCallback = Callable[[SessionEvent], None]


class Subscription:
    """Handle for one registered callback; released exactly once."""

    def __init__(self, emitter: "EventEmitter", callback: EventCallback):
        self._emitter = emitter
        self._callback = callback
        self._released = False

    @property
    def active(self) -> bool:
        return not self._released

    @property
    def label(self) -> str:
        return self._emitter.label

    def release(self) -> bool:
        """Detach the callback. Returns False (and logs) on a second release."""
        if self._released:
            logger.warning("Subscription released more than once", emitter=self._emitter.label)
            return False
        self._released = True
        self._emitter._detach(self)
        return True

    def deliver(self, event: SessionEvent) -> None:
        if self._released:
            return
        self._callback(event)


class EventEmitter:
    """Synchronous fan-out of events to active subscriptions."""

    def __init__(self, label: str):
        self.label = label
        self._subscriptions: List[Subscription] = []

    def subscribe(self, callback: EventCallback) -> Subscription:
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _detach(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def emit(self, event: SessionEvent) -> None:
        for subscription in list(self._subscriptions):
            try:
                subscription.deliver(event)
            except Exception:
                logger.error(
                    "Event subscriber raised",
                    emitter=self.label,
                    event_kind=event.kind.value,
                    exc_info=True,
                )


class SessionEventQueue:
    """Ordered per-tenant queue; events put after close() are dropped."""

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def put(self, event: SessionEvent) -> None:
        if self._closed:
            logger.debug("Dropping event for closed session", tenant_id=self.tenant_id, event_kind=event.kind.value)
            return
        self._queue.put_nowait(event)

    async def get(self) -> Optional[SessionEvent]:
        """Next event, or None once the queue has been closed."""
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
