"""
Configuration package for the guild voice session service.

This package contains:
- loaders: YAML file loading and parsing
- defaults: Default value application (ffmpeg, timings, station table)
- normalization: Guild and station entry normalization
- settings: Pydantic models, load_config and validate_config
"""

from guildvoice.config.settings import (
    AudioConfig,
    TranscoderConfig,
    PresenceConfig,
    StationConfig,
    GuildSettings,
    LoggingConfig,
    AppConfig,
    build_config,
    load_config,
    validate_config,
)

__all__ = [
    'AudioConfig',
    'TranscoderConfig',
    'PresenceConfig',
    'StationConfig',
    'GuildSettings',
    'LoggingConfig',
    'AppConfig',
    'build_config',
    'load_config',
    'validate_config',
]
