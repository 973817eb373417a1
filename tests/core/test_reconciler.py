"""
Tests for event reconciliation and cancelable scheduled actions.
"""

import asyncio
from enum import Enum

import pytest

from guildvoice.core.events import EventKind
from guildvoice.core.models import ConnectionStatus, PlayerStatus
from guildvoice.core.reconciler import RECOVERY_WINDOW, ScheduledActions, SessionReconciler

from conftest import wait_until


class TestScheduledActions:
    """Tests for named, cancelable timers."""

    @pytest.mark.asyncio
    async def test_runs_after_delay(self):
        actions = ScheduledActions("g1")
        fired = []

        async def action():
            fired.append(True)

        actions.schedule("ping", 0.01, action)
        assert actions.is_pending("ping")
        await wait_until(lambda: fired)
        await wait_until(lambda: not actions.is_pending("ping"))

    @pytest.mark.asyncio
    async def test_cancel_prevents_firing(self):
        actions = ScheduledActions("g1")
        fired = []

        async def action():
            fired.append(True)

        actions.schedule("ping", 0.02, action)
        assert actions.cancel("ping") is True
        assert actions.cancel("ping") is False
        await asyncio.sleep(0.05)
        assert fired == []

    @pytest.mark.asyncio
    async def test_reschedule_replaces_pending(self):
        actions = ScheduledActions("g1")
        fired = []

        actions.schedule("ping", 0.02, lambda: _append(fired, "first"))
        actions.schedule("ping", 0.02, lambda: _append(fired, "second"))
        await asyncio.sleep(0.06)

        assert fired == ["second"]

    @pytest.mark.asyncio
    async def test_cancel_all_spares_running_action(self):
        """An action that triggers teardown is not cancelled out from under itself."""
        actions = ScheduledActions("g1")
        finished = []

        async def teardown():
            actions.cancel_all()
            await asyncio.sleep(0)
            finished.append(True)

        actions.schedule("other", 1.0, lambda: _append(finished, "other"))
        actions.schedule("teardown", 0, teardown)
        await wait_until(lambda: finished)
        await asyncio.sleep(0.01)

        assert finished == [True]
        assert actions.pending() == []

    @pytest.mark.asyncio
    async def test_failing_action_is_logged_not_raised(self):
        actions = ScheduledActions("g1")

        async def broken():
            raise RuntimeError("boom")

        task = actions.schedule("broken", 0, broken)
        await task
        assert task.exception() is None


async def _append(target, value):
    target.append(value)


class TestHandlerTable:
    """Dispatch covers every event kind."""

    @pytest.mark.asyncio
    async def test_every_kind_has_a_handler(self, registry):
        session = await registry.join("g1", "c1")
        reconciler = session.reconciler
        assert set(reconciler._handlers) == set(EventKind)

    @pytest.mark.asyncio
    async def test_missing_handler_fails_construction(self, registry, monkeypatch):
        session = await registry.join("g1", "c1")
        original = EventKind

        class ExtendedKind(str, Enum):
            CONNECTION_CHANGED = original.CONNECTION_CHANGED.value
            PLAYER_CHANGED = original.PLAYER_CHANGED.value
            PLAYER_ERROR = original.PLAYER_ERROR.value
            TRANSCODER_EXITED = "transcoder_exited"

        monkeypatch.setattr("guildvoice.core.reconciler.EventKind", ExtendedKind)
        with pytest.raises(RuntimeError, match="transcoder_exited"):
            SessionReconciler(session, registry)


class TestConnectionEvents:
    """Reconnect-or-teardown behaviour."""

    @pytest.mark.asyncio
    async def test_transient_drop_recovers(self, registry, platform):
        session = await registry.join("g1", "c1")
        lost = []

        async def listener(*args):
            lost.append(args)

        registry.add_session_lost_listener(listener)

        platform.drop(session.connection)
        await wait_until(lambda: session.reconciler.actions.is_pending(RECOVERY_WINDOW))
        platform.recover(session.connection)
        await wait_until(lambda: session.connection.status == ConnectionStatus.READY)
        await asyncio.sleep(0.3)

        assert registry.get("g1") is session
        assert lost == []

    @pytest.mark.asyncio
    async def test_unrecovered_drop_tears_down(self, registry, platform, playback, supervisor):
        """No recovery within the window: connection destroyed, resources released."""
        session = await registry.join("g1", "c1")
        await playback.play_radio("g1")
        lost = []

        async def listener(tenant_id, channel_id, reason):
            lost.append(reason)

        registry.add_session_lost_listener(listener)
        platform.drop(session.connection)

        await wait_until(lambda: not registry.has_session("g1"))
        await wait_until(lambda: lost)

        assert lost == ["disconnect_timeout"]
        assert session.connection.is_destroyed
        assert supervisor.live_count() == 0
        assert session.connection.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_external_destroy_is_session_loss(self, registry):
        session = await registry.join("g1", "c1")
        lost = []

        async def listener(tenant_id, channel_id, reason):
            lost.append((tenant_id, channel_id, reason))

        registry.add_session_lost_listener(listener)
        session.connection.destroy()

        await wait_until(lambda: lost)
        assert lost == [("g1", "c1", "destroyed")]
        assert not registry.has_session("g1")

    @pytest.mark.asyncio
    async def test_no_callbacks_after_teardown(self, registry):
        """Released subscriptions never deliver into a destroyed session."""
        session = await registry.join("g1", "c1")
        await registry.leave("g1")

        session.player._set_status(PlayerStatus.BUFFERING)
        await asyncio.sleep(0.01)

        assert session.reconciler.queue.closed
        assert session.reconciler.actions.pending() == []
