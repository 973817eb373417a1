"""
Service wiring: builds the session core from an AppConfig.

The embedding application supplies the platform client (and optionally a
settings store), then routes commands to `service.registry` /
`service.playback` and membership events to `service.presence`.
"""

import asyncio
import signal
from typing import Optional

from guildvoice.config import AppConfig, load_config, validate_config
from guildvoice.core.platform import SettingsStore, StaticSettingsStore, VoicePlatform
from guildvoice.core.playback import PlaybackController
from guildvoice.core.presence import PresencePolicy
from guildvoice.core.session_registry import SessionRegistry
from guildvoice.core.transcoder import TranscoderSupervisor
from guildvoice.logging_config import configure_logging, get_logger

logger = get_logger(__name__)


class VoiceService:
    """Owns the supervisor, registry, playback controller and presence policy."""

    def __init__(
        self,
        config: AppConfig,
        supervisor: TranscoderSupervisor,
        registry: SessionRegistry,
        playback: PlaybackController,
        presence: PresencePolicy,
    ):
        self.config = config
        self.supervisor = supervisor
        self.registry = registry
        self.playback = playback
        self.presence = presence
        self._shutdown_event = asyncio.Event()
        self._stopped = False

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        platform: VoicePlatform,
        settings_store: Optional[SettingsStore] = None,
        supervisor: Optional[TranscoderSupervisor] = None,
    ) -> "VoiceService":
        errors, warnings = validate_config(config)
        if errors:
            logger.error("❌ Configuration validation FAILED", errors=errors, warnings=warnings)
            raise RuntimeError(f"Configuration errors: {errors}")
        if warnings:
            logger.warning("⚠️  Configuration warnings", warnings=warnings)

        supervisor = supervisor or TranscoderSupervisor(config.transcoder)
        registry = SessionRegistry(platform, supervisor, config.audio)
        playback = PlaybackController(registry, config)
        store = settings_store or StaticSettingsStore(config.guilds)
        presence = PresencePolicy(registry, playback, store, config.presence)
        logger.info(
            "Voice service ready",
            stations=sorted(config.stations),
            default_station=config.default_station,
            guilds=len(config.guilds),
        )
        return cls(config, supervisor, registry, playback, presence)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._shutdown_event.set)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def wait_for_shutdown(self) -> None:
        """Block until a signal (or request_shutdown) arrives, then shut down."""
        await self._shutdown_event.wait()
        await self.shutdown()

    async def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        logger.info("Shutting down voice service", sessions=len(self.registry.sessions()))
        await self.presence.close()
        await self.registry.shutdown()
        logger.info("Voice service has shut down")


def create_service(
    platform: VoicePlatform,
    config_path: Optional[str] = None,
    settings_store: Optional[SettingsStore] = None,
) -> VoiceService:
    """Load YAML config, configure logging and build a VoiceService."""
    config = load_config(config_path)
    configure_logging(
        log_level=config.logging.level.upper(),
        log_to_file=config.logging.to_file,
        log_file_path=config.logging.file_path,
        log_format=config.logging.format,
    )
    return VoiceService.from_config(config, platform, settings_store)
