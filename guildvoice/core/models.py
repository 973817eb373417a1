"""
Core data models for the guild voice session manager.

One Session record per tenant owns the connection, the player, the active
stream descriptor and the transcoder handle. The registry is the only place
that creates, mutates or discards these records.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from guildvoice.core.connection import VoiceConnection
    from guildvoice.core.events import Subscription
    from guildvoice.core.player import AudioPlayer
    from guildvoice.core.reconciler import SessionReconciler
    from guildvoice.core.transcoder import TranscoderProcess


class ConnectionStatus(str, Enum):
    SIGNALLING = "signalling"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class PlayerStatus(str, Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


class StreamKind(str, Enum):
    RADIO = "radio"
    CATALOG = "catalog"


@dataclass(frozen=True)
class RadioStream:
    """A continuous live source; reaching its end is a fault to recover from."""
    url: str
    station: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> StreamKind:
        return StreamKind.RADIO

    @property
    def name(self) -> str:
        return self.station.get("name") or "radio"


@dataclass(frozen=True)
class CatalogStream:
    """A finite named item; reaching its end is normal completion."""
    url: str
    item_name: str
    author_name: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.time)

    @property
    def kind(self) -> StreamKind:
        return StreamKind.CATALOG

    @property
    def name(self) -> str:
        return self.item_name


StreamDescriptor = Union[RadioStream, CatalogStream]


@dataclass
class Session:
    """Complete live state for one tenant's voice session."""
    tenant_id: str
    channel_id: str
    connection: "VoiceConnection"
    player: "AudioPlayer"
    generation: int
    stream: Optional[StreamDescriptor] = None
    transcoder: Optional["TranscoderProcess"] = None
    subscriptions: List["Subscription"] = field(default_factory=list)
    reconciler: Optional["SessionReconciler"] = None
    created_at: float = field(default_factory=time.time)

    @property
    def connection_state(self) -> ConnectionStatus:
        return self.connection.status

    @property
    def player_state(self) -> PlayerStatus:
        return self.player.status


@dataclass
class SessionStatus:
    """Point-in-time view of a tenant, safe to hand to formatting layers."""
    tenant_id: str
    has_connection: bool
    has_player: bool
    volume: float
    channel_id: Optional[str] = None
    stream: Optional[StreamDescriptor] = None
    player_status: Optional[PlayerStatus] = None
    connection_status: Optional[ConnectionStatus] = None
    transcoder_pid: Optional[int] = None
    uptime_sec: float = 0.0
