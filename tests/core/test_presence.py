"""
Tests for the presence / continuity policy.

Guilds from the shared config fixture:
- g-always: always-on in c-always
- g-follow: follow-occupancy in c-follow
"""

import asyncio

import pytest

from guildvoice.config import GuildSettings
from guildvoice.core.models import ConnectionStatus, RadioStream

from conftest import wait_until


class TestFollowOccupancy:
    """Join when listeners arrive, leave when the channel empties."""

    @pytest.mark.asyncio
    async def test_listeners_arrive_join_and_play_default(self, presence, registry, playback):
        await presence.on_membership_changed("g-follow", "c-follow", True)

        session = registry.get("g-follow")
        assert session is not None
        assert session.connection_state == ConnectionStatus.READY
        stream = playback.get_stream("g-follow")
        assert isinstance(stream, RadioStream)
        assert stream.station["key"] == "egypt"

    @pytest.mark.asyncio
    async def test_channel_empties_leave(self, presence, registry):
        await presence.on_membership_changed("g-follow", "c-follow", True)
        await presence.on_membership_changed("g-follow", "c-follow", False)

        assert not registry.has_session("g-follow")

    @pytest.mark.asyncio
    async def test_duplicate_notifications_are_idempotent(self, presence, registry, platform, supervisor):
        await asyncio.gather(
            presence.on_membership_changed("g-follow", "c-follow", True),
            presence.on_membership_changed("g-follow", "c-follow", True),
        )
        await presence.on_membership_changed("g-follow", "c-follow", True)

        assert len(platform.connections) == 1
        assert len(supervisor.spawned) == 1

        await presence.on_membership_changed("g-follow", "c-follow", False)
        await presence.on_membership_changed("g-follow", "c-follow", False)
        assert not registry.has_session("g-follow")

    @pytest.mark.asyncio
    async def test_other_channels_ignored(self, presence, registry):
        await presence.on_membership_changed("g-follow", "c-elsewhere", True)
        assert not registry.has_session("g-follow")

    @pytest.mark.asyncio
    async def test_unconfigured_guild_ignored(self, presence, registry):
        await presence.on_membership_changed("g-unknown", "c1", True)
        assert not registry.has_session("g-unknown")

    @pytest.mark.asyncio
    async def test_join_failure_is_contained(self, presence, registry, platform):
        platform.denied.add("c-follow")

        await presence.on_membership_changed("g-follow", "c-follow", True)

        assert not registry.has_session("g-follow")

    @pytest.mark.asyncio
    async def test_existing_stream_kept(self, presence, registry, playback):
        """Arriving listeners do not interrupt what is already playing."""
        await registry.join("g-follow", "c-follow")
        await playback.play_catalog("g-follow", "https://cdn.example/1.mp3", "Al-Fatiha", "Reciter")

        await presence.on_membership_changed("g-follow", "c-follow", True)

        assert playback.get_stream("g-follow").kind.value == "catalog"


class TestAlwaysOn:
    """Stay connected and come back after losses."""

    @pytest.mark.asyncio
    async def test_empty_channel_does_not_leave(self, presence, registry):
        await registry.join("g-always", "c-always")

        await presence.on_membership_changed("g-always", "c-always", False)

        assert registry.has_session("g-always")

    @pytest.mark.asyncio
    async def test_listeners_arriving_join(self, presence, registry):
        await presence.on_membership_changed("g-always", "c-always", True)
        assert registry.has_session("g-always")

    @pytest.mark.asyncio
    async def test_lost_session_rejoins_with_default_station(self, presence, registry, playback):
        session = await registry.join("g-always", "c-always")
        await playback.play_catalog("g-always", "https://cdn.example/1.mp3", "Al-Fatiha", "Reciter")

        session.connection.destroy()
        await wait_until(lambda: presence.rejoin_pending("g-always"))
        await wait_until(lambda: playback.get_stream("g-always") is not None and registry.get("g-always") is not session)

        new_session = registry.get("g-always")
        assert new_session.channel_id == "c-always"
        assert new_session.connection_state == ConnectionStatus.READY
        assert isinstance(playback.get_stream("g-always"), RadioStream)
        await wait_until(lambda: not presence.rejoin_pending("g-always"))

    @pytest.mark.asyncio
    async def test_rejoin_not_duplicated(self, presence):
        assert presence.schedule_rejoin("g-always") is True
        assert presence.schedule_rejoin("g-always") is False

    @pytest.mark.asyncio
    async def test_rejoin_skipped_when_already_connected(self, presence, registry, platform):
        presence.schedule_rejoin("g-always")
        await registry.join("g-always", "c-always")

        await wait_until(lambda: not presence.rejoin_pending("g-always"))

        assert len(platform.connections) == 1
        assert registry.get("g-always").stream is None

    @pytest.mark.asyncio
    async def test_rejoin_retries_connection_timeouts(self, presence, registry, platform):
        platform.unresponsive.add("c-always")
        presence.schedule_rejoin("g-always")

        await wait_until(lambda: len(platform.connections) == 1, timeout=2)
        platform.unresponsive.discard("c-always")
        await wait_until(lambda: registry.has_session("g-always"), timeout=2)

        assert len(platform.connections) == 2
        assert platform.connections[0].is_destroyed

    @pytest.mark.asyncio
    async def test_rejoin_gives_up_after_attempts(self, presence, registry, platform):
        platform.unresponsive.add("c-always")
        presence.schedule_rejoin("g-always")

        await wait_until(lambda: not presence.rejoin_pending("g-always"), timeout=3)

        assert len(platform.connections) == 2
        assert not registry.has_session("g-always")

    @pytest.mark.asyncio
    async def test_follow_guild_loss_does_not_rejoin(self, presence, registry):
        session = await registry.join("g-follow", "c-follow")

        session.connection.destroy()
        await wait_until(lambda: not registry.has_session("g-follow"))
        await asyncio.sleep(0.1)

        assert not presence.rejoin_pending("g-follow")
        assert not registry.has_session("g-follow")

    @pytest.mark.asyncio
    async def test_bot_removed_schedules_rejoin(self, presence, registry):
        await registry.join("g-always", "c-always")

        await presence.on_bot_removed("g-always")

        assert presence.rejoin_pending("g-always")
        await wait_until(lambda: registry.has_session("g-always"))

    @pytest.mark.asyncio
    async def test_settings_change_respected(self, presence, registry, settings_store):
        """Mode is read from the settings store on every decision."""
        settings_store.set_guild_settings(
            GuildSettings(guild_id="g-always", voice_channel_id="c-always", always_on=False)
        )
        await registry.join("g-always", "c-always")

        await presence.on_membership_changed("g-always", "c-always", False)

        assert not registry.has_session("g-always")

    @pytest.mark.asyncio
    async def test_close_cancels_pending_rejoins(self, presence, registry):
        presence.schedule_rejoin("g-always")
        await presence.close()

        await asyncio.sleep(0.1)
        assert not presence.rejoin_pending("g-always")
        assert not registry.has_session("g-always")
