"""
Configuration normalization and sanitization.

This module handles:
- Guild continuity settings in their accepted shapes (list, mapping, shorthand)
- Station entries given as bare URLs
"""

from typing import Any, Dict, List

ALWAYS_ON_MODES = {'always_on', 'always-on', '24_7', '24/7', 'permanent'}
FOLLOW_MODES = {'follow_occupancy', 'follow-occupancy', 'occupancy', 'follow'}


def _coerce_always_on(entry: Dict[str, Any]) -> bool:
    """
    Resolve the continuity mode of one guild entry.

    Accepts `always_on: bool`, the legacy `voice24_7: bool` flag, or a
    `mode:` string. `mode` wins when present.
    """
    mode = entry.get('mode')
    if mode is not None:
        mode_normalized = str(mode).strip().lower()
        if mode_normalized in ALWAYS_ON_MODES:
            return True
        if mode_normalized in FOLLOW_MODES:
            return False
        raise ValueError(f"Unknown continuity mode '{mode}'")
    if 'always_on' in entry:
        return bool(entry['always_on'])
    return bool(entry.get('voice24_7', False))


def _normalize_guild_entry(guild_id: Any, raw_entry: Any) -> Dict[str, Any]:
    if isinstance(raw_entry, (str, int)):
        # Shorthand: guild_id: channel_id
        return {
            'guild_id': str(guild_id),
            'voice_channel_id': str(raw_entry),
            'always_on': False,
        }
    if not isinstance(raw_entry, dict):
        raise TypeError(f"Unsupported guild definition for '{guild_id}': {type(raw_entry).__name__}")

    channel_id = raw_entry.get('voice_channel_id', raw_entry.get('channel_id'))
    return {
        'guild_id': str(raw_entry.get('guild_id', guild_id)),
        'voice_channel_id': str(channel_id) if channel_id is not None else None,
        'always_on': _coerce_always_on(raw_entry),
    }


def normalize_guilds(config_data: Dict[str, Any]) -> None:
    """
    Normalize the `guilds:` block into a list of GuildSettings dicts.

    Accepted shapes:
    - list of mappings with `guild_id`
    - mapping of guild_id -> mapping
    - mapping of guild_id -> channel_id (follow-occupancy shorthand)

    IDs are coerced to strings since platform snowflakes overflow YAML ints
    in some consumers.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    raw_guilds = config_data.get('guilds')
    if not raw_guilds:
        config_data['guilds'] = []
        return

    normalized: List[Dict[str, Any]] = []
    if isinstance(raw_guilds, dict):
        for guild_id, raw_entry in raw_guilds.items():
            normalized.append(_normalize_guild_entry(guild_id, raw_entry))
    elif isinstance(raw_guilds, list):
        for raw_entry in raw_guilds:
            if not isinstance(raw_entry, dict) or 'guild_id' not in raw_entry:
                raise TypeError("Guild list entries must be mappings with a 'guild_id'")
            normalized.append(_normalize_guild_entry(raw_entry['guild_id'], raw_entry))
    else:
        raise TypeError(f"Unsupported guilds block: {type(raw_guilds).__name__}")

    config_data['guilds'] = normalized


def normalize_stations(config_data: Dict[str, Any]) -> None:
    """
    Expand bare-URL station entries and stamp each station with its key.

    Args:
        config_data: Configuration dictionary to modify in-place
    """
    stations = config_data.get('stations') or {}
    for key, raw_entry in list(stations.items()):
        if isinstance(raw_entry, str):
            raw_entry = {'url': raw_entry, 'name': key}
        elif not isinstance(raw_entry, dict):
            raise TypeError(f"Unsupported station definition for '{key}': {type(raw_entry).__name__}")
        entry = dict(raw_entry)
        entry['key'] = key
        entry.setdefault('name', key)
        stations[key] = entry
    config_data['stations'] = stations
