"""
Configuration models for the guild voice session service.

Pydantic v2 models validated from a YAML document that has gone through
default application and normalization.
"""

from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from guildvoice.config.loaders import resolve_config_path, load_yaml_with_env_expansion
from guildvoice.config.defaults import (
    apply_transcoder_defaults,
    apply_audio_defaults,
    apply_station_defaults,
)
from guildvoice.config.normalization import normalize_guilds, normalize_stations
from guildvoice.logging_config import get_logger

logger = get_logger(__name__)


class AudioConfig(BaseModel):
    connection_timeout_sec: float = Field(default=10.0, gt=0)
    disconnect_recovery_sec: float = Field(default=5.0, gt=0)
    radio_restart_delay_sec: float = Field(default=1.0, ge=0)
    radio_retry_delay_sec: float = Field(default=5.0, ge=0)
    default_volume: float = Field(default=1.0)
    min_volume: float = Field(default=0.0)
    max_volume: float = Field(default=2.0)
    volume_step: float = Field(default=0.1)
    # 20ms of 48kHz stereo s16le per frame
    frame_duration_ms: float = Field(default=20.0, gt=0)


class TranscoderConfig(BaseModel):
    ffmpeg_path: str = Field(default="ffmpeg")
    loglevel: str = Field(default="error")
    sample_rate: int = Field(default=48000)
    channels: int = Field(default=2)
    reconnect_delay_max_sec: int = Field(default=5)
    kill_grace_sec: float = Field(default=2.0, ge=0)
    exit_check_sec: float = Field(default=1.0, ge=0)
    ignored_stderr: List[str] = Field(default_factory=lambda: ["deprecated", "bitrate"])


class PresenceConfig(BaseModel):
    rejoin_delay_sec: float = Field(default=3.0, ge=0)
    rejoin_attempts: int = Field(default=3, ge=1)
    rejoin_backoff_sec: float = Field(default=2.0, ge=0)
    rejoin_backoff_max_sec: float = Field(default=10.0, ge=0)


class StationConfig(BaseModel):
    key: str
    name: str
    url: str
    country: Optional[str] = None
    flag: Optional[str] = None


class GuildSettings(BaseModel):
    guild_id: str
    voice_channel_id: Optional[str] = None
    always_on: bool = Field(default=False)


class LoggingConfig(BaseModel):
    level: str = Field(default="info")
    format: str = Field(default="json")
    to_file: bool = Field(default=False)
    file_path: str = Field(default="guildvoice.log")


class AppConfig(BaseModel):
    audio: AudioConfig = Field(default_factory=AudioConfig)
    transcoder: TranscoderConfig = Field(default_factory=TranscoderConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    stations: Dict[str, StationConfig] = Field(default_factory=dict)
    default_station: str = Field(default="egypt")
    guilds: List[GuildSettings] = Field(default_factory=list)

    def get_default_station(self) -> Optional[StationConfig]:
        return self.stations.get(self.default_station)

    def get_guild(self, guild_id: Any) -> Optional[GuildSettings]:
        guild_id = str(guild_id)
        for guild in self.guilds:
            if guild.guild_id == guild_id:
                return guild
        return None


def build_config(config_data: Optional[Dict[str, Any]] = None) -> AppConfig:
    """
    Build an AppConfig from an already-parsed mapping.

    Applies defaults and normalization in the same order as `load_config`,
    so in-memory configs (tests, embedding applications) behave identically
    to file-based ones.
    """
    config_data = dict(config_data or {})

    apply_transcoder_defaults(config_data)
    apply_audio_defaults(config_data)
    apply_station_defaults(config_data)

    normalize_stations(config_data)
    normalize_guilds(config_data)

    return AppConfig(**config_data)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load configuration from YAML file with environment variable expansion.

    Args:
        path: YAML file, relative to the project root or absolute; when
            omitted, $GUILDVOICE_CONFIG or config/guildvoice.yaml is used

    Returns:
        Validated AppConfig instance
    """
    resolved = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(resolved)
    config = build_config(config_data)
    logger.info(
        "Configuration loaded",
        path=resolved,
        guilds=len(config.guilds),
        stations=sorted(config.stations),
        default_station=config.default_station,
    )
    return config


def validate_config(config: AppConfig) -> Tuple[List[str], List[str]]:
    """Validate configuration before the service starts.

    Args:
        config: AppConfig instance to validate

    Returns:
        (errors, warnings): Lists of validation errors and warnings

    Errors block startup, warnings are logged but non-blocking.
    """
    errors: List[str] = []
    warnings: List[str] = []

    if config.default_station not in config.stations:
        errors.append(f"Default station '{config.default_station}' is not defined in stations")

    audio = config.audio
    if audio.min_volume < 0 or audio.max_volume < audio.min_volume:
        errors.append(
            f"Invalid volume range [{audio.min_volume}, {audio.max_volume}]"
        )
    elif not (audio.min_volume <= audio.default_volume <= audio.max_volume):
        errors.append(
            f"Default volume {audio.default_volume} outside [{audio.min_volume}, {audio.max_volume}]"
        )

    seen = set()
    for guild in config.guilds:
        if guild.guild_id in seen:
            errors.append(f"Guild {guild.guild_id} configured more than once")
        seen.add(guild.guild_id)
        if guild.always_on and not guild.voice_channel_id:
            errors.append(f"Guild {guild.guild_id} is always-on but has no voice_channel_id")

    if audio.disconnect_recovery_sec < 1.0:
        warnings.append(
            f"Disconnect recovery window very small: {audio.disconnect_recovery_sec}s "
            "(transient network drops will tear sessions down)"
        )
    if audio.radio_restart_delay_sec < 0.5:
        warnings.append(
            f"Radio restart delay very small: {audio.radio_restart_delay_sec}s "
            "(a dead station will respawn ffmpeg in a tight loop)"
        )
    if config.presence.rejoin_delay_sec < 1.0:
        warnings.append(
            f"Rejoin delay very small: {config.presence.rejoin_delay_sec}s (platform may rate limit)"
        )

    return errors, warnings
