"""
Shared fakes and fixtures for the voice session tests.

FakePlatform stands in for the chat platform client: it validates channels
and walks new connections SIGNALLING -> CONNECTING -> READY on the loop.
FakeSupervisor stands in for ffmpeg: its processes yield PCM frames from
memory and can be told to end or fail.
"""

import asyncio
import itertools
from typing import Dict, List, Optional, Set

import pytest
import pytest_asyncio

from guildvoice.config import AudioConfig, GuildSettings, PresenceConfig, TranscoderConfig, build_config
from guildvoice.core.errors import EngineFatalError, InvalidChannel, PermissionDenied, SubprocessSpawnFailure
from guildvoice.core.models import ConnectionStatus
from guildvoice.core.platform import StaticSettingsStore
from guildvoice.core.playback import PlaybackController
from guildvoice.core.presence import PresencePolicy
from guildvoice.core.session_registry import SessionRegistry


class FakeTransport:
    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        self.frames: List[bytes] = []
        self.closed = False

    def send_audio(self, frame: bytes) -> None:
        self.frames.append(frame)

    def close(self) -> None:
        self.closed = True


class FakePlatform:
    """Platform client double; connections become READY on the next loop turns."""

    def __init__(self):
        self.denied: Set[str] = set()
        self.invalid: Set[str] = set()
        self.unresponsive: Set[str] = set()
        self.connections = []
        self.transports: List[FakeTransport] = []
        self.checks: List[tuple] = []

    async def check_channel(self, tenant_id: str, channel_id: str) -> None:
        self.checks.append((tenant_id, channel_id))
        if channel_id in self.invalid:
            raise InvalidChannel(f"Channel {channel_id} is not a voice channel", tenant_id=tenant_id)
        if channel_id in self.denied:
            raise PermissionDenied(f"Missing Connect/Speak in {channel_id}", tenant_id=tenant_id)

    def open_transport(self, connection):
        transport = FakeTransport(connection.channel_id)
        self.connections.append(connection)
        self.transports.append(transport)
        if connection.channel_id not in self.unresponsive:
            self._advance(connection, [ConnectionStatus.CONNECTING, ConnectionStatus.READY])
        return transport

    def _advance(self, connection, steps):
        loop = asyncio.get_running_loop()

        def step():
            if connection.is_destroyed or not steps:
                return
            connection.update_state(steps.pop(0))
            if steps:
                loop.call_soon(step)

        loop.call_soon(step)

    def drop(self, connection) -> None:
        connection.update_state(ConnectionStatus.DISCONNECTED)

    def recover(self, connection) -> None:
        connection.update_state(ConnectionStatus.CONNECTING)
        self._advance(connection, [ConnectionStatus.READY])

    def live_connections(self, tenant_id: str):
        return [c for c in self.connections if c.tenant_id == tenant_id and not c.is_destroyed]


class FakeProcess:
    """In-memory transcoder; endless unless given a frame budget."""

    _pids = itertools.count(4000)

    def __init__(self, tenant_id: str, url: str, frames: Optional[int] = None):
        self.tenant_id = tenant_id
        self.url = url
        self.pid = next(self._pids)
        self.frames_remaining = frames
        self.failing = False
        self.terminate_requested = False
        self.returncode: Optional[int] = None
        self.reads = 0

    @property
    def alive(self) -> bool:
        return self.returncode is None

    async def read(self, size: int) -> bytes:
        await asyncio.sleep(0)
        if self.terminate_requested:
            return b''
        if self.failing:
            self.returncode = 1
            raise EngineFatalError("Transcoder exited with code 1", tenant_id=self.tenant_id)
        if self.frames_remaining is not None:
            if self.frames_remaining <= 0:
                self.returncode = 0
                return b''
            self.frames_remaining -= 1
        self.reads += 1
        return b'\x10\x00' * (size // 2)

    def end(self) -> None:
        self.frames_remaining = 0

    def fail(self) -> None:
        self.failing = True


class FakeSupervisor:
    """TranscoderSupervisor double with the same ownership rules."""

    def __init__(self, config: Optional[TranscoderConfig] = None):
        self.config = config or TranscoderConfig()
        self.spawned: List[FakeProcess] = []
        self.terminated: List[FakeProcess] = []
        self.fail_spawn = False
        self.frames_for: Dict[str, int] = {}
        self._processes: Dict[str, FakeProcess] = {}

    async def spawn(self, tenant_id: str, url: str) -> FakeProcess:
        self.terminate_tenant(tenant_id)
        if self.fail_spawn:
            raise SubprocessSpawnFailure("Could not start transcoder: ffmpeg not found", tenant_id=tenant_id)
        process = FakeProcess(tenant_id, url, frames=self.frames_for.get(url))
        self.spawned.append(process)
        self._processes[tenant_id] = process
        return process

    def terminate(self, handle: FakeProcess) -> None:
        if self._processes.get(handle.tenant_id) is handle:
            del self._processes[handle.tenant_id]
        if handle.terminate_requested:
            return
        handle.terminate_requested = True
        if handle.returncode is None:
            handle.returncode = -15
        self.terminated.append(handle)

    def terminate_tenant(self, tenant_id: str) -> bool:
        handle = self._processes.get(tenant_id)
        if handle is None:
            return False
        self.terminate(handle)
        return True

    def get(self, tenant_id: str) -> Optional[FakeProcess]:
        return self._processes.get(tenant_id)

    def live_count(self) -> int:
        return len(self._processes)

    def alive_for(self, tenant_id: str) -> List[FakeProcess]:
        return [p for p in self.spawned if p.tenant_id == tenant_id and p.alive]

    async def shutdown(self) -> None:
        for handle in list(self._processes.values()):
            self.terminate(handle)


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005):
    """Poll `predicate` on the loop until it is truthy or `timeout` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if predicate():
            return
        if loop.time() >= deadline:
            raise AssertionError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def fast_audio():
    return AudioConfig(
        connection_timeout_sec=0.3,
        disconnect_recovery_sec=0.2,
        radio_restart_delay_sec=0.05,
        radio_retry_delay_sec=0.1,
        frame_duration_ms=5,
    )


@pytest.fixture
def app_config(fast_audio):
    config = build_config({
        'guilds': {
            'g-always': {'voice_channel_id': 'c-always', 'mode': 'always_on'},
            'g-follow': 'c-follow',
        },
    })
    config.audio = fast_audio
    config.presence = PresenceConfig(rejoin_delay_sec=0.05, rejoin_attempts=2, rejoin_backoff_sec=0)
    return config


@pytest.fixture
def platform():
    return FakePlatform()


@pytest.fixture
def supervisor():
    return FakeSupervisor()


@pytest_asyncio.fixture
async def registry(platform, supervisor, fast_audio):
    registry = SessionRegistry(platform, supervisor, fast_audio)
    yield registry
    await registry.shutdown()


@pytest.fixture
def playback(registry, app_config):
    return PlaybackController(registry, app_config)


@pytest.fixture
def settings_store(app_config):
    return StaticSettingsStore(app_config.guilds)


@pytest_asyncio.fixture
async def presence(registry, playback, settings_store, app_config):
    policy = PresencePolicy(registry, playback, settings_store, app_config.presence)
    yield policy
    await policy.close()


@pytest.fixture
def always_on_settings():
    return GuildSettings(guild_id='g-always', voice_channel_id='c-always', always_on=True)
