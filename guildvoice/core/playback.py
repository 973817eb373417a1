"""
Playback controller: the per-tenant control surface over player and transcoder.

play_stream suspends only while the transcoder is spawned. pause, resume,
stop and the volume operations are synchronous and answer with a bool:
False means the precondition did not hold and nothing changed.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Mapping, Optional, Union

from guildvoice.config import AppConfig, StationConfig
from guildvoice.core.errors import NoActiveSession
from guildvoice.core.models import (
    CatalogStream,
    PlayerStatus,
    RadioStream,
    Session,
    StreamDescriptor,
)
from guildvoice.core.player import VolumeControl
from guildvoice.core.session_registry import SessionRegistry
from guildvoice.logging_config import get_logger

logger = get_logger(__name__)


class PlaybackController:
    """Starts, steers and retires streams for registered sessions."""

    def __init__(self, registry: SessionRegistry, config: Optional[AppConfig] = None):
        self.registry = registry
        self.config = config or AppConfig()
        self.audio = self.config.audio
        registry.bind_playback(self)

    # -- starting streams ---------------------------------------------------

    async def play_stream(self, tenant_id: str, url: str, descriptor: StreamDescriptor) -> bool:
        """
        Replace whatever the tenant is playing with `url`.

        The previous stream and its transcoder are always discarded first.

        Raises:
            NoActiveSession: the tenant has not joined a channel
            SubprocessSpawnFailure: ffmpeg could not be started; the tenant
                is left idle with no stream
        """
        tenant_id = str(tenant_id)
        async with self.registry.lock(tenant_id):
            session = self.registry.get(tenant_id)
            if session is None:
                raise NoActiveSession("Join a voice channel before playing", tenant_id=tenant_id)
            return await self._start(session, url, descriptor)

    async def _start(self, session: Session, url: str, descriptor: StreamDescriptor) -> bool:
        self._discard_stream(session)
        handle = await self.registry.supervisor.spawn(session.tenant_id, url)
        session.transcoder = handle
        session.stream = descriptor
        volume = VolumeControl(self.registry.get_volume(session.tenant_id))
        session.player.play(handle, volume)
        logger.info(
            "▶️ Stream started",
            tenant_id=session.tenant_id,
            stream_kind=descriptor.kind.value,
            name=descriptor.name,
            pid=handle.pid,
            volume=volume.volume,
        )
        return True

    async def play_radio(self, tenant_id: str, station: Union[str, StationConfig, None] = None) -> bool:
        """Play a station by key (default station when omitted)."""
        resolved = self._resolve_station(station)
        descriptor = RadioStream(url=resolved.url, station=resolved.model_dump())
        return await self.play_stream(tenant_id, resolved.url, descriptor)

    async def play_catalog(
        self,
        tenant_id: str,
        url: str,
        item_name: str,
        author_name: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        descriptor = CatalogStream(
            url=url,
            item_name=item_name,
            author_name=author_name,
            metadata=dict(metadata or {}),
        )
        return await self.play_stream(tenant_id, url, descriptor)

    def _resolve_station(self, station: Union[str, StationConfig, None]) -> StationConfig:
        if isinstance(station, StationConfig):
            return station
        key = station or self.config.default_station
        resolved = self.config.stations.get(key)
        if resolved is None:
            raise KeyError(f"Unknown station: {key}")
        return resolved

    # -- reconciler entry points -------------------------------------------

    async def restart_radio(self, tenant_id: str, generation: int, descriptor: StreamDescriptor) -> bool:
        """Replay `descriptor` if it is still the idle session's stream."""
        tenant_id = str(tenant_id)
        async with self.registry.lock(tenant_id):
            session = self.registry.get(tenant_id)
            if not self._still_current(session, generation, descriptor):
                logger.debug("Skipping stale radio restart", tenant_id=tenant_id)
                return False
            return await self._start(session, descriptor.url, descriptor)

    def finish_stream(self, tenant_id: str, generation: int, descriptor: StreamDescriptor) -> bool:
        """Clear a finished or abandoned stream and reclaim its transcoder."""
        session = self.registry.get(tenant_id)
        if not self._still_current(session, generation, descriptor):
            return False
        self._discard_stream(session)
        return True

    def _still_current(self, session: Optional[Session], generation: int, descriptor: StreamDescriptor) -> bool:
        return (
            session is not None
            and session.generation == generation
            and session.stream is descriptor
            and session.player.status == PlayerStatus.IDLE
        )

    def clear_stream(self, tenant_id: str) -> bool:
        session = self.registry.get(tenant_id)
        if session is None or session.stream is None:
            return False
        self._discard_stream(session)
        return True

    def _discard_stream(self, session: Session) -> None:
        if session.reconciler is not None:
            session.reconciler.cancel_stream_actions()
        session.player.stop()
        transcoder, session.transcoder = session.transcoder, None
        if transcoder is not None:
            self.registry.supervisor.terminate(transcoder)
        session.stream = None

    # -- control ------------------------------------------------------------

    def pause(self, tenant_id: str) -> bool:
        session = self.registry.get(tenant_id)
        if session is None:
            return False
        return session.player.pause()

    def resume(self, tenant_id: str) -> bool:
        session = self.registry.get(tenant_id)
        if session is None:
            return False
        return session.player.unpause()

    def stop(self, tenant_id: str) -> bool:
        session = self.registry.get(tenant_id)
        if session is None or session.player.status not in (PlayerStatus.PLAYING, PlayerStatus.PAUSED):
            return False
        self._discard_stream(session)
        logger.info("⏹️ Stream stopped", tenant_id=session.tenant_id)
        return True

    def set_volume(self, tenant_id: str, volume: float) -> bool:
        """Clamp, record and apply a volume. Recorded even without a session."""
        try:
            value = float(volume)
        except (TypeError, ValueError):
            return False
        if math.isnan(value):
            return False
        value = max(self.audio.min_volume, min(self.audio.max_volume, value))
        self.registry.record_volume(tenant_id, value)

        session = self.registry.get(tenant_id)
        if session is not None and session.player.volume is not None:
            session.player.volume.set_volume(value)
        logger.debug("Volume set", tenant_id=str(tenant_id), volume=value)
        return True

    def increase_volume(self, tenant_id: str) -> float:
        self.set_volume(tenant_id, round(self.registry.get_volume(tenant_id) + self.audio.volume_step, 2))
        return self.registry.get_volume(tenant_id)

    def decrease_volume(self, tenant_id: str) -> float:
        self.set_volume(tenant_id, round(self.registry.get_volume(tenant_id) - self.audio.volume_step, 2))
        return self.registry.get_volume(tenant_id)

    # -- queries ------------------------------------------------------------

    def get_state(self, tenant_id: str) -> Optional[PlayerStatus]:
        session = self.registry.get(tenant_id)
        return session.player.status if session is not None else None

    def get_stream(self, tenant_id: str) -> Optional[StreamDescriptor]:
        session = self.registry.get(tenant_id)
        return session.stream if session is not None else None

    def station_info(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        stream = self.get_stream(tenant_id)
        if isinstance(stream, RadioStream):
            return dict(stream.station)
        return None
