"""
Tests for service wiring and shutdown.
"""

import asyncio

import pytest

from guildvoice.config import build_config
from guildvoice.core.models import PlayerStatus
from guildvoice.service import VoiceService

from conftest import wait_until


@pytest.fixture
def service(app_config, platform, supervisor):
    return VoiceService.from_config(app_config, platform, supervisor=supervisor)


class TestFromConfig:
    """Tests for VoiceService.from_config()."""

    @pytest.mark.asyncio
    async def test_components_share_registry(self, service, supervisor):
        assert service.supervisor is supervisor
        assert service.playback.registry is service.registry
        assert service.registry.playback is service.playback
        assert service.presence.registry is service.registry
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_end_to_end_occupancy(self, service, platform):
        await service.presence.on_membership_changed("g-follow", "c-follow", True)
        await wait_until(lambda: service.playback.get_state("g-follow") == PlayerStatus.PLAYING)

        await wait_until(lambda: platform.transports[0].frames)
        await service.shutdown()
        assert not service.registry.has_session("g-follow")

    def test_invalid_config_refused(self, platform, supervisor):
        config = build_config({'default_station': 'atlantis'})

        with pytest.raises(RuntimeError, match="atlantis"):
            VoiceService.from_config(config, platform, supervisor=supervisor)


class TestShutdown:
    """Tests for shutdown sequencing."""

    @pytest.mark.asyncio
    async def test_shutdown_tears_down_sessions(self, service, platform, supervisor):
        await service.registry.join("g1", "c1")
        await service.playback.play_radio("g1")

        await service.shutdown()

        assert service.stopped
        assert service.registry.sessions() == []
        assert all(c.is_destroyed for c in platform.connections)
        assert supervisor.live_count() == 0

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, service):
        await service.shutdown()
        await service.shutdown()
        assert service.stopped

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_rejoin(self, service):
        assert service.presence.schedule_rejoin("g-always")

        await service.shutdown()
        await asyncio.sleep(0.1)

        assert not service.presence.rejoin_pending("g-always")
        assert not service.registry.has_session("g-always")

    @pytest.mark.asyncio
    async def test_request_shutdown_unblocks_waiter(self, service):
        waiter = asyncio.ensure_future(service.wait_for_shutdown())
        await asyncio.sleep(0.01)
        assert not waiter.done()

        service.request_shutdown()
        await asyncio.wait_for(waiter, timeout=1)

        assert service.stopped
