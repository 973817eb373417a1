"""
Playback engine: one audio player per tenant.

The player pulls fixed-size PCM frames from a source (normally the tenant's
transcoder), runs them through an inline volume control and pushes them to
its sink (the tenant's voice connection) at real-time pace.

States: IDLE -> BUFFERING -> PLAYING <-> PAUSED, and back to IDLE on stop,
end of stream or error. Every transition is published as a PlayerChanged
event; read failures additionally publish a PlayerError before the IDLE.
"""

from __future__ import annotations

import array
import asyncio
import sys
from typing import Optional, Protocol

from guildvoice.core.errors import EngineFatalError
from guildvoice.core.events import EventCallback, EventEmitter, PlayerChanged, PlayerError, Subscription
from guildvoice.core.models import PlayerStatus
from guildvoice.logging_config import get_logger

logger = get_logger(__name__)

# 20ms of 48kHz, 2 channel, 16-bit PCM
DEFAULT_FRAME_BYTES = 48000 // 50 * 2 * 2
DEFAULT_FRAME_DURATION = 0.02

_INT16_MAX = 32767
_INT16_MIN = -32768


class PcmSource(Protocol):
    async def read(self, size: int) -> bytes:
        ...


class AudioSink(Protocol):
    def send_audio(self, frame: bytes) -> bool:
        ...


class VolumeControl:
    """Inline gain for signed 16-bit little-endian PCM."""

    def __init__(self, volume: float = 1.0):
        self._volume = float(volume)

    @property
    def volume(self) -> float:
        return self._volume

    def set_volume(self, volume: float) -> None:
        self._volume = float(volume)

    def apply(self, frame: bytes) -> bytes:
        gain = self._volume
        if gain == 1.0:
            return frame
        if gain <= 0.0:
            return bytes(len(frame))

        usable = len(frame) - (len(frame) % 2)
        buf = array.array('h')
        buf.frombytes(frame[:usable])
        if sys.byteorder == 'big':
            buf.byteswap()
        for i, sample in enumerate(buf):
            scaled = int(sample * gain)
            if scaled > _INT16_MAX:
                scaled = _INT16_MAX
            elif scaled < _INT16_MIN:
                scaled = _INT16_MIN
            buf[i] = scaled
        if sys.byteorder == 'big':
            buf.byteswap()
        return buf.tobytes() + frame[usable:]


class AudioPlayer:
    """State machine plus pump task for one tenant's playback."""

    def __init__(
        self,
        tenant_id: str,
        *,
        frame_bytes: int = DEFAULT_FRAME_BYTES,
        frame_duration: float = DEFAULT_FRAME_DURATION,
    ):
        self.tenant_id = tenant_id
        self.frame_bytes = frame_bytes
        self.frame_duration = frame_duration
        self._status = PlayerStatus.IDLE
        self._source: Optional[PcmSource] = None
        self._volume: Optional[VolumeControl] = None
        self._sink: Optional[AudioSink] = None
        self._pump: Optional[asyncio.Task] = None
        self._resumed = asyncio.Event()
        self._emitter = EventEmitter(f"player:{tenant_id}")
        self.frames_played = 0

    @property
    def status(self) -> PlayerStatus:
        return self._status

    @property
    def source(self) -> Optional[PcmSource]:
        return self._source

    @property
    def volume(self) -> Optional[VolumeControl]:
        """Volume control of the current resource, None when idle."""
        return self._volume

    def attach(self, sink: AudioSink) -> None:
        self._sink = sink

    def subscribe(self, callback: EventCallback) -> Subscription:
        return self._emitter.subscribe(callback)

    @property
    def subscriber_count(self) -> int:
        return self._emitter.subscriber_count

    def _set_status(self, status: PlayerStatus, *, requested: bool = False, errored: bool = False) -> None:
        old = self._status
        if old == status:
            return
        self._status = status
        self._emitter.emit(PlayerChanged(self.tenant_id, old, status, requested=requested, errored=errored))

    def play(self, source: PcmSource, volume: Optional[VolumeControl] = None) -> None:
        """Start consuming `source`, replacing whatever was playing."""
        self._cancel_pump()
        self._source = source
        self._volume = volume or VolumeControl()
        self._resumed.set()
        self._set_status(PlayerStatus.BUFFERING)
        self._pump = asyncio.get_running_loop().create_task(
            self._run(source, self._volume),
            name=f"player-pump:{self.tenant_id}",
        )

    def pause(self) -> bool:
        if self._status != PlayerStatus.PLAYING:
            return False
        self._resumed.clear()
        self._set_status(PlayerStatus.PAUSED)
        return True

    def unpause(self) -> bool:
        if self._status != PlayerStatus.PAUSED:
            return False
        self._resumed.set()
        self._set_status(PlayerStatus.PLAYING)
        return True

    def stop(self) -> bool:
        """Explicit stop; the resulting IDLE is flagged as requested."""
        if self._status == PlayerStatus.IDLE:
            return False
        self._cancel_pump()
        self._release_resource()
        self._set_status(PlayerStatus.IDLE, requested=True)
        return True

    def _cancel_pump(self) -> None:
        pump, self._pump = self._pump, None
        if pump is not None and not pump.done() and pump is not asyncio.current_task():
            pump.cancel()

    def _release_resource(self) -> None:
        self._source = None
        self._volume = None
        self._resumed.set()

    async def _run(self, source: PcmSource, volume: VolumeControl) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        try:
            while True:
                frame = await source.read(self.frame_bytes)
                if not frame:
                    break
                if len(frame) < self.frame_bytes:
                    frame = frame + bytes(self.frame_bytes - len(frame))

                if self._status == PlayerStatus.BUFFERING:
                    self._set_status(PlayerStatus.PLAYING)
                if not self._resumed.is_set():
                    await self._resumed.wait()
                    deadline = loop.time()

                if self._sink is not None:
                    self._sink.send_audio(volume.apply(frame))
                self.frames_played += 1

                deadline += self.frame_duration
                delay = deadline - loop.time()
                await asyncio.sleep(delay if delay > 0 else 0)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = exc if isinstance(exc, EngineFatalError) else EngineFatalError(str(exc) or type(exc).__name__, tenant_id=self.tenant_id)
            logger.warning("Playback source failed", tenant_id=self.tenant_id, error=str(error))
            self._finish(error)
            return
        self._finish(None)

    def _finish(self, error: Optional[BaseException]) -> None:
        self._pump = None
        self._release_resource()
        if error is not None:
            self._emitter.emit(PlayerError(self.tenant_id, error))
        self._set_status(PlayerStatus.IDLE, errored=error is not None)
