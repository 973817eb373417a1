"""
Locating and reading the guildvoice YAML file.

The file is picked in this order: an explicit path, then GUILDVOICE_CONFIG,
then config/guildvoice.yaml under the project root. Before parsing, the text
goes through two substitution passes:

    ${NAME:-fallback}   value of NAME, or `fallback` when NAME is unset or empty
    ${NAME} / $NAME     value of NAME; left as-is when NAME is unset

Station names are written in Arabic, so the file is always read as UTF-8.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

DEFAULT_CONFIG_PATH = "config/guildvoice.yaml"
CONFIG_ENV_VAR = "GUILDVOICE_CONFIG"

_FALLBACK_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*):-([^}]*)\}")


def resolve_config_path(path: Optional[str] = None) -> str:
    """
    Pick the config file to load and return it as an absolute path.

    Args:
        path: Explicit location; falls back to $GUILDVOICE_CONFIG, then the
            bundled default. `~` is expanded and relative paths are taken
            from the project root, not the working directory.
    """
    candidate = path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH
    candidate = os.path.expanduser(candidate)
    if os.path.isabs(candidate):
        return candidate
    return str(_PROJ_DIR / candidate)


def expand_env_refs(text: str) -> str:
    """Substitute environment references in raw config text."""

    def _with_fallback(match):
        return os.environ.get(match.group(1)) or match.group(2)

    return os.path.expandvars(_FALLBACK_REF.sub(_with_fallback, text))


def load_yaml_with_env_expansion(path: str) -> Dict[str, Any]:
    """
    Read a YAML config file with environment references substituted.

    Returns:
        The top-level mapping; an empty file yields {}

    Raises:
        FileNotFoundError: no file at `path`
        yaml.YAMLError: the text does not parse
        TypeError: the document root is a list or scalar
    """
    try:
        raw = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found at: {path}")

    try:
        data = yaml.safe_load(expand_env_refs(raw))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration {path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise TypeError(
            f"Configuration root in {path} must be a mapping, got {type(data).__name__}"
        )
    return data
