"""
Default value application for configuration.

This module handles:
- Transcoder (ffmpeg) defaults with environment overrides
- Audio/session timing defaults with environment overrides
- The built-in radio station table and default station selection
"""

import os
from typing import Any, Dict


# Stations shipped with the service; YAML `stations:` entries override by key.
BUILTIN_STATIONS: Dict[str, Dict[str, Any]] = {
    'egypt': {
        'name': 'إذاعة القرآن الكريم - مصر',
        'flag': '🇪🇬',
        'url': 'https://stream.radiojar.com/8s5u5tpdtwzuv',
        'country': 'مصر',
    },
    'saudi': {
        'name': 'إذاعة القرآن الكريم - السعودية',
        'flag': '🇸🇦',
        'url': 'https://n0a.radiojar.com/0tpy88dtwzuv',
        'country': 'السعودية',
    },
    'uae': {
        'name': 'إذاعة القرآن الكريم - أبوظبي',
        'flag': '🇦🇪',
        'url': 'https://media.adradio.ae/quran',
        'country': 'الإمارات',
    },
}

DEFAULT_STATION_KEY = 'egypt'


def apply_transcoder_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply transcoder defaults from environment variables.

    Sets:
    - transcoder.ffmpeg_path: ffmpeg executable (default: ffmpeg)

    Environment variables:
    - GUILDVOICE_FFMPEG_PATH: Override the ffmpeg executable

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    transcoder_cfg = config_data.get('transcoder', {}) or {}

    env_path = os.getenv('GUILDVOICE_FFMPEG_PATH', '').strip()
    if env_path:
        transcoder_cfg['ffmpeg_path'] = env_path
    else:
        transcoder_cfg.setdefault('ffmpeg_path', 'ffmpeg')

    config_data['transcoder'] = transcoder_cfg


def apply_audio_defaults(config_data: Dict[str, Any]) -> None:
    """
    Apply audio/session timing defaults with environment variable overrides.

    Environment variables:
    - GUILDVOICE_CONNECTION_TIMEOUT: Seconds `join` waits for a ready
      connection (default: 10)

    Invalid numeric overrides are ignored and the YAML/default value kept.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    audio_cfg = config_data.get('audio', {}) or {}

    raw_timeout = os.getenv('GUILDVOICE_CONNECTION_TIMEOUT')
    if raw_timeout:
        try:
            audio_cfg['connection_timeout_sec'] = float(raw_timeout)
        except ValueError:
            pass
    audio_cfg.setdefault('connection_timeout_sec', 10.0)

    config_data['audio'] = audio_cfg


def apply_station_defaults(config_data: Dict[str, Any]) -> None:
    """
    Merge the built-in station table and pick the default station.

    YAML stations win over built-ins with the same key. The default station
    comes from GUILDVOICE_DEFAULT_STATION, then YAML `default_station`, then
    the built-in default.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    stations = {key: dict(value) for key, value in BUILTIN_STATIONS.items()}
    stations.update(config_data.get('stations', {}) or {})
    config_data['stations'] = stations

    env_default = os.getenv('GUILDVOICE_DEFAULT_STATION', '').strip()
    if env_default:
        config_data['default_station'] = env_default
    else:
        config_data.setdefault('default_station', DEFAULT_STATION_KEY)
