"""
Seams to the collaborators the core does not own.

The platform client validates channels and opens transports; the settings
store owns each guild's continuity mode and target channel. Both are
supplied by the embedding application.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional, Protocol, TYPE_CHECKING

from guildvoice.config import GuildSettings

if TYPE_CHECKING:  # pragma: no cover - typing only
    from guildvoice.core.connection import VoiceConnection


class VoiceTransport(Protocol):
    """Media link opened by the platform for one connection."""

    def send_audio(self, frame: bytes) -> None:
        ...

    def close(self) -> None:
        ...


class VoicePlatform(Protocol):
    """Platform client as seen by the session registry."""

    async def check_channel(self, tenant_id: str, channel_id: str) -> None:
        """Raise InvalidChannel or PermissionDenied if the channel cannot be used."""
        ...

    def open_transport(self, connection: "VoiceConnection") -> VoiceTransport:
        """Start the handshake for `connection`.

        The platform reports progress by calling
        `connection.update_state(...)` as signalling and media negotiation
        advance, and later when the network drops or recovers.
        """
        ...


class SettingsStore(Protocol):
    async def get_guild_settings(self, tenant_id: str) -> Optional[GuildSettings]:
        ...


class StaticSettingsStore:
    """Settings store backed by the `guilds:` block of the YAML config."""

    def __init__(self, guilds: Iterable[GuildSettings] = ()):
        self._guilds: Dict[str, GuildSettings] = {g.guild_id: g for g in guilds}

    async def get_guild_settings(self, tenant_id: str) -> Optional[GuildSettings]:
        return self._guilds.get(str(tenant_id))

    def set_guild_settings(self, settings: GuildSettings) -> None:
        self._guilds[settings.guild_id] = settings
