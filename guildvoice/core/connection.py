"""
Transport connection binding.

VoiceConnection mirrors the lifecycle of one platform voice link:

    SIGNALLING -> CONNECTING -> READY
    READY -> DISCONNECTED
    DISCONNECTED -> SIGNALLING | CONNECTING   (recovering)
    any -> DESTROYED                          (terminal)

The platform drives transitions through update_state(); the registry and the
reconciler observe them through subscriptions and wait_for().
"""

from __future__ import annotations

import asyncio
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from guildvoice.core.errors import ConnectionAborted, InvalidOperation
from guildvoice.core.events import ConnectionChanged, EventCallback, EventEmitter, Subscription
from guildvoice.core.models import ConnectionStatus
from guildvoice.core.platform import VoicePlatform, VoiceTransport
from guildvoice.logging_config import get_logger

logger = get_logger(__name__)

_ALLOWED_TRANSITIONS: Dict[ConnectionStatus, Set[ConnectionStatus]] = {
    ConnectionStatus.SIGNALLING: {
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.DESTROYED,
    },
    ConnectionStatus.CONNECTING: {
        ConnectionStatus.READY,
        ConnectionStatus.SIGNALLING,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.DESTROYED,
    },
    ConnectionStatus.READY: {
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.SIGNALLING,
        ConnectionStatus.DESTROYED,
    },
    ConnectionStatus.DISCONNECTED: {
        ConnectionStatus.SIGNALLING,
        ConnectionStatus.CONNECTING,
        ConnectionStatus.DESTROYED,
    },
    ConnectionStatus.DESTROYED: set(),
}


class VoiceConnection:
    """State machine and audio outlet for one tenant's transport."""

    def __init__(self, tenant_id: str, channel_id: str):
        self.tenant_id = tenant_id
        self.channel_id = channel_id
        self._status = ConnectionStatus.SIGNALLING
        self._transport: Optional[VoiceTransport] = None
        self._emitter = EventEmitter(f"connection:{tenant_id}")
        self._waiters: List[Tuple[FrozenSet[ConnectionStatus], asyncio.Future]] = []
        self.frames_sent = 0

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_healthy(self) -> bool:
        return self._status not in (ConnectionStatus.DISCONNECTED, ConnectionStatus.DESTROYED)

    @property
    def is_destroyed(self) -> bool:
        return self._status == ConnectionStatus.DESTROYED

    @property
    def transport(self) -> Optional[VoiceTransport]:
        return self._transport

    def bind_transport(self, transport: VoiceTransport) -> None:
        self._transport = transport

    def subscribe(self, callback: EventCallback) -> Subscription:
        return self._emitter.subscribe(callback)

    @property
    def subscriber_count(self) -> int:
        return self._emitter.subscriber_count

    def update_state(self, status: ConnectionStatus) -> bool:
        """
        Apply a transition reported by the platform.

        Returns:
            True if the state changed, False if it was already `status`

        Raises:
            InvalidOperation: the transition is not part of the lifecycle,
                including any attempt to leave DESTROYED
        """
        status = ConnectionStatus(status)
        old = self._status
        if status == old:
            return False
        if status not in _ALLOWED_TRANSITIONS[old]:
            raise InvalidOperation(
                f"Illegal connection transition {old.value} -> {status.value}",
                tenant_id=self.tenant_id,
            )
        self._status = status
        logger.debug(
            "Voice connection state changed",
            tenant_id=self.tenant_id,
            channel_id=self.channel_id,
            old=old.value,
            new=status.value,
        )
        self._resolve_waiters(status)
        self._emitter.emit(ConnectionChanged(self.tenant_id, old, status))
        return True

    def _resolve_waiters(self, status: ConnectionStatus) -> None:
        for targets, future in list(self._waiters):
            if future.done():
                continue
            if status in targets:
                future.set_result(status)
            elif status == ConnectionStatus.DESTROYED:
                future.set_exception(ConnectionAborted(
                    "Voice connection destroyed while waiting",
                    tenant_id=self.tenant_id,
                ))

    async def wait_for(self, *statuses: ConnectionStatus, timeout: float) -> ConnectionStatus:
        """
        Suspend until the connection enters any of `statuses`.

        Raises:
            asyncio.TimeoutError: none of the states was entered in time
            ConnectionAborted: the connection was destroyed first
        """
        targets = frozenset(ConnectionStatus(s) for s in statuses)
        if self._status in targets:
            return self._status
        if self._status == ConnectionStatus.DESTROYED:
            raise ConnectionAborted("Voice connection already destroyed", tenant_id=self.tenant_id)

        future = asyncio.get_running_loop().create_future()
        entry = (targets, future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._waiters.remove(entry)

    def send_audio(self, frame: bytes) -> bool:
        """Forward one PCM frame; frames are dropped unless READY."""
        if self._status != ConnectionStatus.READY or self._transport is None:
            return False
        self._transport.send_audio(frame)
        self.frames_sent += 1
        return True

    def destroy(self) -> bool:
        """
        Close the transport and enter DESTROYED. Safe to call repeatedly.

        The transport is closed even when the platform already reported
        DESTROYED; the return value is False in that case.
        """
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                transport.close()
            except Exception:
                logger.warning(
                    "Error closing voice transport",
                    tenant_id=self.tenant_id,
                    exc_info=True,
                )
        if self._status == ConnectionStatus.DESTROYED:
            return False
        self.update_state(ConnectionStatus.DESTROYED)
        return True


class ConnectionFactory:
    """Creates connections and hands them to the platform to negotiate."""

    def __init__(self, platform: VoicePlatform):
        self._platform = platform

    def connect(self, tenant_id: str, channel_id: str) -> VoiceConnection:
        connection = VoiceConnection(tenant_id, channel_id)
        transport = self._platform.open_transport(connection)
        connection.bind_transport(transport)
        logger.info("Voice connection opening", tenant_id=tenant_id, channel_id=channel_id)
        return connection
