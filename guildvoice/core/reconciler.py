"""
Event reconciliation for one tenant's session.

Connection and player events are queued in emission order and consumed by a
single task. Handlers never block the consumer: anything that waits (recovery
windows, restart delays, retry backoff) runs as a named ScheduledActions task
and re-checks the session generation before it acts.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from prometheus_client import Counter

from guildvoice.config import AudioConfig
from guildvoice.core.errors import ConnectionAborted
from guildvoice.core.events import (
    ConnectionChanged,
    EventKind,
    PlayerChanged,
    PlayerError,
    SessionEvent,
    SessionEventQueue,
    Subscription,
)
from guildvoice.core.models import ConnectionStatus, PlayerStatus, Session, StreamKind
from guildvoice.logging_config import bind_tenant, get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from guildvoice.core.session_registry import SessionRegistry

logger = get_logger(__name__)

_RECOVERIES = Counter(
    "guildvoice_recoveries_total",
    "Automatic recovery actions taken by the reconciler",
    ["kind"],
)

# Timer names; scheduling under an existing name replaces the pending timer.
RECOVERY_WINDOW = "recovery_window"
SESSION_LOST = "session_lost"
RADIO_RESTART = "radio_restart"
RADIO_RETRY = "radio_retry"

STREAM_ACTIONS = (RADIO_RESTART, RADIO_RETRY)


class ScheduledActions:
    """Named, cancelable delayed actions belonging to one session."""

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(self, name: str, delay: float, action: Callable[[], Awaitable[None]]) -> asyncio.Task:
        self.cancel(name)
        task = asyncio.get_running_loop().create_task(
            self._run(name, delay, action),
            name=f"scheduled:{self.tenant_id}:{name}",
        )
        self._tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    def _forget(self, name: str, task: asyncio.Task) -> None:
        if self._tasks.get(name) is task:
            del self._tasks[name]

    async def _run(self, name: str, delay: float, action: Callable[[], Awaitable[None]]) -> None:
        bind_tenant(self.tenant_id)
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Scheduled action failed", tenant_id=self.tenant_id, action=name, exc_info=True)

    def cancel(self, name: str) -> bool:
        task = self._tasks.get(name)
        if task is None or task is asyncio.current_task():
            return False
        del self._tasks[name]
        task.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending action except the one currently running."""
        cancelled = 0
        for name in list(self._tasks):
            if self.cancel(name):
                cancelled += 1
        return cancelled

    def pending(self) -> List[str]:
        return sorted(self._tasks)

    def is_pending(self, name: str) -> bool:
        return name in self._tasks


class SessionReconciler:
    """Single consumer of one session's connection and player events."""

    def __init__(self, session: Session, registry: "SessionRegistry", config: Optional[AudioConfig] = None):
        self.session = session
        self.registry = registry
        self.config = config or AudioConfig()
        self.tenant_id = session.tenant_id
        self.generation = session.generation
        self.queue = SessionEventQueue(self.tenant_id)
        self.actions = ScheduledActions(self.tenant_id)
        self._consumer: Optional[asyncio.Task] = None
        self._closed = False

        self._handlers: Dict[EventKind, Callable[[SessionEvent], None]] = {
            EventKind.CONNECTION_CHANGED: self._on_connection_changed,
            EventKind.PLAYER_CHANGED: self._on_player_changed,
            EventKind.PLAYER_ERROR: self._on_player_error,
        }
        missing = set(EventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No reconciler handler for {sorted(k.value for k in missing)}")

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> List[Subscription]:
        """Subscribe to the session's bindings and start consuming events."""
        subscriptions = [
            self.session.connection.subscribe(self.queue.put),
            self.session.player.subscribe(self.queue.put),
        ]
        self._consumer = asyncio.get_running_loop().create_task(
            self._consume(),
            name=f"reconciler:{self.tenant_id}:{self.generation}",
        )
        return subscriptions

    async def _consume(self) -> None:
        bind_tenant(self.tenant_id)
        while True:
            event = await self.queue.get()
            try:
                if event is None:
                    break
                if self._closed:
                    continue
                self._handlers[event.kind](event)
            except Exception:
                logger.error(
                    "Reconciler handler failed",
                    tenant_id=self.tenant_id,
                    event_kind=event.kind.value if event is not None else None,
                    exc_info=True,
                )
            finally:
                self.queue.task_done()
        logger.debug("Reconciler stopped", tenant_id=self.tenant_id, generation=self.generation)

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""
        await self.queue.join()

    def close(self) -> None:
        """Stop consuming and cancel pending timers. Queued events are dropped."""
        if self._closed:
            return
        self._closed = True
        self.queue.close()
        self.actions.cancel_all()

    def cancel_stream_actions(self) -> None:
        for name in STREAM_ACTIONS:
            self.actions.cancel(name)

    # -- connection ---------------------------------------------------------

    def _on_connection_changed(self, event: ConnectionChanged) -> None:
        if event.new == ConnectionStatus.DISCONNECTED:
            logger.warning(
                "Voice connection dropped, waiting for recovery",
                tenant_id=self.tenant_id,
                window_sec=self.config.disconnect_recovery_sec,
            )
            self.actions.schedule(RECOVERY_WINDOW, 0, self._await_recovery)
        elif event.new == ConnectionStatus.DESTROYED:
            logger.warning("Voice connection destroyed externally", tenant_id=self.tenant_id)
            self.actions.cancel(RECOVERY_WINDOW)
            self.actions.schedule(SESSION_LOST, 0, lambda: self._lose_session("destroyed"))

    async def _await_recovery(self) -> None:
        connection = self.session.connection
        try:
            await connection.wait_for(
                ConnectionStatus.SIGNALLING,
                ConnectionStatus.CONNECTING,
                ConnectionStatus.READY,
                timeout=self.config.disconnect_recovery_sec,
            )
        except asyncio.TimeoutError:
            logger.warning("Voice connection did not recover", tenant_id=self.tenant_id)
            await self._lose_session("disconnect_timeout")
            return
        except ConnectionAborted:
            # the DESTROYED event that follows handles teardown
            return
        _RECOVERIES.labels(kind="connection").inc()
        logger.info("✅ Voice connection recovering", tenant_id=self.tenant_id, status=connection.status.value)

    async def _lose_session(self, reason: str) -> None:
        await self.registry.handle_session_lost(self.tenant_id, self.generation, reason)

    # -- player -------------------------------------------------------------

    def _on_player_changed(self, event: PlayerChanged) -> None:
        if event.new != PlayerStatus.IDLE or event.requested or event.errored:
            return
        descriptor = self.session.stream
        if descriptor is None:
            return
        playback = self.registry.playback
        if playback is None:
            return

        if descriptor.kind == StreamKind.RADIO:
            logger.info(
                "Radio stream ended unexpectedly, restarting",
                tenant_id=self.tenant_id,
                station=descriptor.name,
                delay_sec=self.config.radio_restart_delay_sec,
            )
            _RECOVERIES.labels(kind="radio_restart").inc()
            self.actions.schedule(
                RADIO_RESTART,
                self.config.radio_restart_delay_sec,
                lambda: playback.restart_radio(self.tenant_id, self.generation, descriptor),
            )
        else:
            logger.info("Catalog item finished", tenant_id=self.tenant_id, item=descriptor.name)
            playback.finish_stream(self.tenant_id, self.generation, descriptor)

    def _on_player_error(self, event: PlayerError) -> None:
        descriptor = self.session.stream
        logger.error(
            "Playback engine error",
            tenant_id=self.tenant_id,
            error=str(event.error),
            stream_kind=descriptor.kind.value if descriptor else None,
        )
        playback = self.registry.playback
        if descriptor is None or playback is None:
            return

        if descriptor.kind == StreamKind.RADIO:
            _RECOVERIES.labels(kind="radio_retry").inc()
            self.actions.cancel(RADIO_RESTART)
            self.actions.schedule(
                RADIO_RETRY,
                self.config.radio_retry_delay_sec,
                lambda: playback.restart_radio(self.tenant_id, self.generation, descriptor),
            )
        else:
            playback.finish_stream(self.tenant_id, self.generation, descriptor)
