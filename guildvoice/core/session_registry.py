"""
Session registry: the single owner of per-tenant voice session state.

All mutations for a tenant happen under that tenant's asyncio.Lock, so
concurrent joins, leaves, plays and loss handling for one tenant serialize
while different tenants proceed independently.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from prometheus_client import Counter, Gauge

from guildvoice.config import AudioConfig
from guildvoice.core.connection import ConnectionFactory
from guildvoice.core.errors import ConnectionTimeout, InvalidChannel, PermissionDenied
from guildvoice.core.models import ConnectionStatus, Session, SessionStatus
from guildvoice.core.platform import VoicePlatform
from guildvoice.core.player import AudioPlayer
from guildvoice.core.reconciler import SessionReconciler
from guildvoice.core.transcoder import TranscoderSupervisor
from guildvoice.logging_config import bind_tenant, get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from guildvoice.core.playback import PlaybackController

logger = get_logger(__name__)

_ACTIVE_SESSIONS = Gauge(
    "guildvoice_active_sessions",
    "Voice sessions currently registered",
)
_JOIN_FAILURES = Counter(
    "guildvoice_join_failures_total",
    "Join attempts that failed and were rolled back",
    ["reason"],
)
_SESSIONS_LOST = Counter(
    "guildvoice_sessions_lost_total",
    "Sessions torn down without an explicit leave",
    ["reason"],
)

SessionLostListener = Callable[[str, str, str], Awaitable[None]]


class SessionRegistry:
    """Maps tenant ids to live Session records."""

    def __init__(
        self,
        platform: VoicePlatform,
        supervisor: TranscoderSupervisor,
        config: Optional[AudioConfig] = None,
    ):
        self.platform = platform
        self.supervisor = supervisor
        self.config = config or AudioConfig()
        self.playback: Optional["PlaybackController"] = None
        self._connections = ConnectionFactory(platform)
        self._sessions: Dict[str, Session] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._volumes: Dict[str, float] = {}
        self._lost_listeners: List[SessionLostListener] = []
        self._generation = 0

        transcoder = supervisor.config
        self._frame_duration = self.config.frame_duration_ms / 1000.0
        self._frame_bytes = int(transcoder.sample_rate * self._frame_duration) * transcoder.channels * 2

    def bind_playback(self, playback: "PlaybackController") -> None:
        self.playback = playback

    def add_session_lost_listener(self, listener: SessionLostListener) -> None:
        self._lost_listeners.append(listener)

    def lock(self, tenant_id: str) -> asyncio.Lock:
        tenant_id = str(tenant_id)
        lock = self._locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tenant_id] = lock
        return lock

    # -- queries ------------------------------------------------------------

    def get(self, tenant_id: str) -> Optional[Session]:
        return self._sessions.get(str(tenant_id))

    def has_session(self, tenant_id: str) -> bool:
        return str(tenant_id) in self._sessions

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def is_current(self, tenant_id: str, generation: int) -> bool:
        session = self._sessions.get(str(tenant_id))
        return session is not None and session.generation == generation

    def get_volume(self, tenant_id: str) -> float:
        return self._volumes.get(str(tenant_id), self.config.default_volume)

    def record_volume(self, tenant_id: str, volume: float) -> None:
        self._volumes[str(tenant_id)] = volume

    def status(self, tenant_id: str) -> SessionStatus:
        tenant_id = str(tenant_id)
        session = self._sessions.get(tenant_id)
        if session is None:
            return SessionStatus(
                tenant_id=tenant_id,
                has_connection=False,
                has_player=False,
                volume=self.get_volume(tenant_id),
            )
        transcoder = session.transcoder
        return SessionStatus(
            tenant_id=tenant_id,
            has_connection=not session.connection.is_destroyed,
            has_player=True,
            volume=self.get_volume(tenant_id),
            channel_id=session.channel_id,
            stream=session.stream,
            player_status=session.player.status,
            connection_status=session.connection.status,
            transcoder_pid=transcoder.pid if transcoder is not None and transcoder.alive else None,
            uptime_sec=time.time() - session.created_at,
        )

    # -- mutations ----------------------------------------------------------

    async def join(self, tenant_id: str, channel_id: str) -> Session:
        """
        Connect a tenant to a voice channel, reusing a healthy connection.

        Args:
            tenant_id: Guild id
            channel_id: Target voice channel id

        Returns:
            The tenant's session, connected and READY

        Raises:
            InvalidChannel: channel missing or not voice-capable
            PermissionDenied: missing connect/speak grants
            ConnectionTimeout: transport not READY within connection_timeout_sec
        """
        tenant_id = str(tenant_id)
        channel_id = str(channel_id)
        bind_tenant(tenant_id)

        async with self.lock(tenant_id):
            try:
                await self.platform.check_channel(tenant_id, channel_id)
            except InvalidChannel:
                _JOIN_FAILURES.labels(reason="invalid_channel").inc()
                raise
            except PermissionDenied:
                _JOIN_FAILURES.labels(reason="permission_denied").inc()
                raise

            existing = self._sessions.get(tenant_id)
            if existing is not None:
                if existing.channel_id == channel_id and existing.connection.is_healthy:
                    logger.debug(
                        "Reusing voice session",
                        tenant_id=tenant_id,
                        channel_id=channel_id,
                        connection=existing.connection.status.value,
                    )
                    if existing.connection.status != ConnectionStatus.READY:
                        await self._await_ready(existing)
                    return existing
                logger.info(
                    "Replacing voice session",
                    tenant_id=tenant_id,
                    old_channel_id=existing.channel_id,
                    channel_id=channel_id,
                    connection=existing.connection.status.value,
                )
                self._teardown(existing, "replaced")

            # unregistered until READY so nothing else can observe it half-built
            session = self._build_session(tenant_id, channel_id)
            await self._await_ready(session)
            self._sessions[tenant_id] = session
            _ACTIVE_SESSIONS.set(len(self._sessions))

            logger.info("🔊 Joined voice channel", tenant_id=tenant_id, channel_id=channel_id)
            return session

    async def _await_ready(self, session: Session) -> None:
        """Wait for READY; tear the session down on timeout or cancellation."""
        timeout = self.config.connection_timeout_sec
        try:
            await session.connection.wait_for(ConnectionStatus.READY, timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._teardown(session, "join_timeout")
            _JOIN_FAILURES.labels(reason="timeout").inc()
            logger.warning(
                "Voice connection not ready in time",
                tenant_id=session.tenant_id,
                channel_id=session.channel_id,
                timeout_sec=timeout,
            )
            raise ConnectionTimeout(
                f"Connection to channel {session.channel_id} not ready after {timeout}s",
                tenant_id=session.tenant_id,
            ) from exc
        except BaseException:
            self._teardown(session, "join_failed")
            _JOIN_FAILURES.labels(reason="aborted").inc()
            raise

    def _build_session(self, tenant_id: str, channel_id: str) -> Session:
        self._generation += 1
        connection = self._connections.connect(tenant_id, channel_id)
        player = AudioPlayer(
            tenant_id,
            frame_bytes=self._frame_bytes,
            frame_duration=self._frame_duration,
        )
        player.attach(connection)
        session = Session(
            tenant_id=tenant_id,
            channel_id=channel_id,
            connection=connection,
            player=player,
            generation=self._generation,
        )
        reconciler = SessionReconciler(session, self, self.config)
        session.reconciler = reconciler
        session.subscriptions = reconciler.start()
        return session

    async def leave(self, tenant_id: str) -> bool:
        """Tear down a tenant's session. False when there is none."""
        tenant_id = str(tenant_id)
        async with self.lock(tenant_id):
            session = self._sessions.get(tenant_id)
            if session is None:
                # a stray process may outlive a session that failed mid-teardown
                self.supervisor.terminate_tenant(tenant_id)
                return False
            self._teardown(session, "leave")
            logger.info("👋 Left voice channel", tenant_id=tenant_id, channel_id=session.channel_id)
            return True

    async def handle_session_lost(self, tenant_id: str, generation: int, reason: str) -> bool:
        """
        Tear down a session that failed without a caller asking for it.

        No-op if the session was already replaced or removed. Listeners run
        after the lock is released so they may call join().
        """
        tenant_id = str(tenant_id)
        async with self.lock(tenant_id):
            session = self._sessions.get(tenant_id)
            if session is None or session.generation != generation:
                logger.debug("Ignoring loss of stale session", tenant_id=tenant_id, generation=generation)
                return False
            channel_id = session.channel_id
            self._teardown(session, reason)

        _SESSIONS_LOST.labels(reason=reason).inc()
        logger.warning("Voice session lost", tenant_id=tenant_id, channel_id=channel_id, reason=reason)
        for listener in list(self._lost_listeners):
            try:
                await listener(tenant_id, channel_id, reason)
            except Exception:
                logger.error("Session lost listener failed", tenant_id=tenant_id, exc_info=True)
        return True

    def _teardown(self, session: Session, reason: str) -> None:
        """Release everything a session owns. Tolerates degraded sessions."""
        if self._sessions.get(session.tenant_id) is session:
            del self._sessions[session.tenant_id]
            _ACTIVE_SESSIONS.set(len(self._sessions))

        subscriptions, session.subscriptions = session.subscriptions, []
        for subscription in subscriptions:
            subscription.release()
        if session.reconciler is not None:
            session.reconciler.close()

        transcoder, session.transcoder = session.transcoder, None
        if transcoder is not None:
            self.supervisor.terminate(transcoder)
        session.stream = None
        session.player.stop()
        session.connection.destroy()
        logger.debug("Session torn down", tenant_id=session.tenant_id, generation=session.generation, reason=reason)

    async def shutdown(self) -> None:
        """Tear down every session and wait for transcoders to be reaped."""
        for tenant_id in list(self._sessions):
            async with self.lock(tenant_id):
                session = self._sessions.get(tenant_id)
                if session is not None:
                    self._teardown(session, "shutdown")
        await self.supervisor.shutdown()
        logger.info("Session registry stopped")
