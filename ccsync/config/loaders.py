"""
Config file loading.

- Relative paths resolve against the project root
- ``${VAR}``, ``${VAR:-default}`` and ``${VAR:=default}`` expand from the
  environment before YAML parsing
- A sibling ``<name>.local.yaml`` is deep-merged over the base file
"""

import os
import re
from pathlib import Path

import structlog
import yaml

from ccsync.errors import ConfigError

logger = structlog.get_logger(__name__)

_PROJ_DIR = Path(__file__).parent.parent.parent.resolve()

_ENV_VAR_PATTERN = re.compile(r'\$\{([^}:]+)(:-|:=)?([^}]*)?\}')


def expand_env(text: str) -> str:
    """
    Expand environment references in raw config text.

    ``${VAR:-default}`` falls back when VAR is unset or empty; a bare
    ``${VAR}`` with VAR unset is left untouched so the problem is visible
    in the parsed value.
    """
    def _sub(match):
        name, operator, default = match.group(1), match.group(2), match.group(3) or ""
        value = os.environ.get(name)
        if operator in (":-", ":="):
            return default if not value else value
        return value if value is not None else match.group(0)

    return os.path.expandvars(_ENV_VAR_PATTERN.sub(_sub, text))


def resolve_config_path(path: str) -> str:
    if not os.path.isabs(path):
        return os.path.join(_PROJ_DIR, path)
    return path


def read_yaml(path: str) -> dict:
    """
    Read one YAML file with env expansion.

    Raises:
        ConfigError: missing file, bad YAML, or a top level that is not a mapping.
    """
    try:
        with open(path, 'r') as f:
            raw = f.read()
    except FileNotFoundError as exc:
        raise ConfigError(f"Configuration file not found at: {path}") from exc

    try:
        data = yaml.safe_load(expand_env(raw))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error parsing YAML configuration {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration root must be a mapping: {path}")
    return data


def deep_merge(base: dict, override: dict) -> dict:
    """
    Merge ``override`` into a copy of ``base``.

    Nested dicts merge recursively, an explicit None deletes the key, and any
    other value replaces the base value.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            merged.pop(key, None)
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def local_override_path(path: str) -> str:
    stem, ext = os.path.splitext(path)
    return f"{stem}.local{ext}"


def load_layered_yaml(path: str) -> dict:
    """Load ``path`` and deep-merge its ``.local`` sibling when present."""
    base = read_yaml(path)
    local_path = local_override_path(path)
    if not os.path.isfile(local_path):
        return base

    try:
        local = read_yaml(local_path)
    except ConfigError as exc:
        logger.warning(
            "Ignoring unreadable local config override",
            local_path=local_path,
            error=str(exc),
        )
        return base

    logger.info("Applying local config override", local_path=local_path)
    return deep_merge(base, local)
