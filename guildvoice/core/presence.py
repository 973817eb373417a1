"""
Presence and continuity policy.

Decides, from membership notifications and session-loss callbacks, whether a
tenant's session should be created, kept or torn down:

- always-on guilds stay connected; any loss schedules a delayed rejoin to the
  configured channel followed by the default station.
- follow-occupancy guilds join when listeners appear in the configured channel
  and leave once it is empty.

Notifications may arrive more than once; every path checks current registry
state and the in-flight set before acting.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Optional, Set

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from guildvoice.config import GuildSettings, PresenceConfig
from guildvoice.core.errors import ConnectionTimeout, VoiceSessionError
from guildvoice.core.playback import PlaybackController
from guildvoice.core.platform import SettingsStore
from guildvoice.core.session_registry import SessionRegistry
from guildvoice.logging_config import bind_tenant, get_logger

logger = get_logger(__name__)


class PresencePolicy:
    """Reacts to occupancy changes and lost sessions per guild settings."""

    def __init__(
        self,
        registry: SessionRegistry,
        playback: PlaybackController,
        settings_store: SettingsStore,
        config: Optional[PresenceConfig] = None,
    ):
        self.registry = registry
        self.playback = playback
        self.settings_store = settings_store
        self.config = config or PresenceConfig()
        self._rejoins: Dict[str, asyncio.Task] = {}
        self._in_flight: Set[str] = set()
        registry.add_session_lost_listener(self.on_session_lost)

    async def _settings(self, tenant_id: str) -> Optional[GuildSettings]:
        settings = await self.settings_store.get_guild_settings(tenant_id)
        if settings is None or not settings.voice_channel_id:
            return None
        return settings

    def _connected(self, tenant_id: str) -> bool:
        session = self.registry.get(tenant_id)
        return session is not None and session.connection.is_healthy

    async def on_membership_changed(self, tenant_id: str, channel_id: str, occupants_present: bool) -> None:
        """
        Apply the continuity policy to an occupancy change.

        Args:
            tenant_id: Guild id
            channel_id: Channel whose occupancy changed
            occupants_present: Whether non-bot listeners are now in the channel
        """
        tenant_id = str(tenant_id)
        channel_id = str(channel_id)
        bind_tenant(tenant_id)

        settings = await self._settings(tenant_id)
        if settings is None or settings.voice_channel_id != channel_id:
            return

        if occupants_present:
            if tenant_id in self._in_flight or self.rejoin_pending(tenant_id) or self._connected(tenant_id):
                return
            logger.info("Listeners arrived, joining", tenant_id=tenant_id, channel_id=channel_id)
            self._in_flight.add(tenant_id)
            try:
                await self.registry.join(tenant_id, channel_id)
                await self.restore_stream(tenant_id)
            except VoiceSessionError as exc:
                logger.warning("Occupancy join failed", tenant_id=tenant_id, error=str(exc))
            finally:
                self._in_flight.discard(tenant_id)
            return

        if settings.always_on:
            logger.debug("Channel empty, staying (always-on)", tenant_id=tenant_id)
            return
        if self.registry.has_session(tenant_id):
            logger.info("Channel empty, leaving", tenant_id=tenant_id, channel_id=channel_id)
            await self.registry.leave(tenant_id)

    async def on_session_lost(self, tenant_id: str, channel_id: str, reason: str) -> None:
        settings = await self._settings(tenant_id)
        if settings is None or not settings.always_on:
            return
        logger.info("Always-on session lost, scheduling rejoin", tenant_id=tenant_id, reason=reason)
        self.schedule_rejoin(tenant_id)

    async def on_bot_removed(self, tenant_id: str) -> None:
        """The platform reports the bot was forcibly removed from voice."""
        tenant_id = str(tenant_id)
        await self.registry.leave(tenant_id)
        settings = await self._settings(tenant_id)
        if settings is not None and settings.always_on:
            self.schedule_rejoin(tenant_id)

    async def restore_stream(self, tenant_id: str) -> bool:
        """Start the default station unless something is already playing."""
        if self.playback.get_stream(tenant_id) is not None:
            return False
        return await self.playback.play_radio(tenant_id)

    def rejoin_pending(self, tenant_id: str) -> bool:
        return str(tenant_id) in self._rejoins

    def schedule_rejoin(self, tenant_id: str) -> bool:
        tenant_id = str(tenant_id)
        if self.rejoin_pending(tenant_id) or tenant_id in self._in_flight:
            return False
        task = asyncio.get_running_loop().create_task(
            self._rejoin(tenant_id),
            name=f"rejoin:{tenant_id}",
        )
        self._rejoins[tenant_id] = task
        task.add_done_callback(lambda t: self._rejoin_done(tenant_id, t))
        return True

    def _rejoin_done(self, tenant_id: str, task: asyncio.Task) -> None:
        if self._rejoins.get(tenant_id) is task:
            del self._rejoins[tenant_id]

    async def _rejoin(self, tenant_id: str) -> None:
        bind_tenant(tenant_id)
        await asyncio.sleep(self.config.rejoin_delay_sec)

        settings = await self._settings(tenant_id)
        if settings is None or not settings.always_on:
            return
        if self._connected(tenant_id):
            logger.debug("Rejoin not needed, already connected", tenant_id=tenant_id)
            return

        self._in_flight.add(tenant_id)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.rejoin_attempts),
                wait=wait_exponential(multiplier=self.config.rejoin_backoff_sec, max=self.config.rejoin_backoff_max_sec),
                retry=retry_if_exception_type(ConnectionTimeout),
                reraise=True,
            ):
                with attempt:
                    await self.registry.join(tenant_id, settings.voice_channel_id)
            await self.restore_stream(tenant_id)
            logger.info("🔁 Rejoined always-on channel", tenant_id=tenant_id, channel_id=settings.voice_channel_id)
        except VoiceSessionError as exc:
            logger.error("Rejoin failed", tenant_id=tenant_id, error=str(exc))
        finally:
            self._in_flight.discard(tenant_id)

    async def close(self) -> None:
        tasks = list(self._rejoins.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._rejoins.clear()
