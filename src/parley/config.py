"""Engine configuration for parley.

Config discovery (first match wins):
  1. explicit path (``--config`` flag)
  2. ``./parley.yaml``
  3. ``~/.config/parley/config.yaml``
  4. Built-in defaults
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from parley.errors import ConfigError

_logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Config data structures
# ---------------------------------------------------------------------------

@dataclass
class StreamSpec:
    """Stream parser limits.

    Text and image payloads have separate ceilings; inline images are
    base64 and legitimately orders of magnitude larger than text.
    """

    max_text_chars: int = 200_000
    max_image_chars: int = 50_000_000
    markup_tools: bool = False  # parse <tool_use> markup instead of native calls


@dataclass
class ToolSpec:
    default_timeout: float = 30.0
    max_timeout: float = 120.0
    history_enabled: bool = True
    max_history: int = 500


@dataclass
class RequestSpec:
    lock_timeout: float = 240.0  # seconds in ``sending`` before a forced reset
    grace_delay: float = 0.1  # transient state -> idle
    max_continuations: int = 8


@dataclass
class IdSpec:
    max_mappings: int = 1000
    evict_ratio: float = 0.1


@dataclass
class PermissionSpec:
    enabled: bool = False
    mode: str = "blacklist"  # "whitelist" | "blacklist"
    whitelist: list[str] = field(default_factory=list)
    blacklist: list[str] = field(default_factory=list)


@dataclass
class EngineConfig:
    """Top-level config."""

    stream: StreamSpec = field(default_factory=StreamSpec)
    tools: ToolSpec = field(default_factory=ToolSpec)
    request: RequestSpec = field(default_factory=RequestSpec)
    ids: IdSpec = field(default_factory=IdSpec)
    permissions: PermissionSpec = field(default_factory=PermissionSpec)
    log_level: str = "WARNING"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

_SEARCH_PATHS = [
    Path("./parley.yaml"),
    Path.home() / ".config" / "parley" / "config.yaml",
]


def _parse_section(cls: type, raw: Any, name: str) -> Any:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{name}' must be a mapping, got {type(raw).__name__}")
    known = {f.name: f for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            _logger.warning("Ignoring unknown config key %s.%s", name, key)
            continue
        if value is None:
            continue
        kwargs[key] = value
    try:
        section = cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid section '{name}': {e}") from e
    _check_types(section, name)
    return section


def _check_types(section: Any, name: str) -> None:
    defaults = type(section)()
    for f in fields(section):
        value = getattr(section, f.name)
        expected = type(getattr(defaults, f.name))
        if expected is float and isinstance(value, int) and not isinstance(value, bool):
            setattr(section, f.name, float(value))
            continue
        if not isinstance(value, expected) or (expected is not bool and isinstance(value, bool)):
            raise ConfigError(
                f"{name}.{f.name} must be {expected.__name__}, got {type(value).__name__}"
            )


def _validate(config: EngineConfig) -> EngineConfig:
    if config.permissions.mode not in ("whitelist", "blacklist"):
        raise ConfigError(f"permissions.mode must be whitelist or blacklist, got {config.permissions.mode!r}")
    if config.tools.max_timeout <= 0 or config.tools.default_timeout <= 0:
        raise ConfigError("tool timeouts must be positive")
    if not 0 < config.ids.evict_ratio <= 1:
        raise ConfigError("ids.evict_ratio must be in (0, 1]")
    if config.ids.max_mappings < 1:
        raise ConfigError("ids.max_mappings must be at least 1")
    return config


def config_from_dict(raw: dict[str, Any]) -> EngineConfig:
    """Build an EngineConfig from a parsed YAML mapping."""
    log_level = raw.get("log_level", "WARNING")
    if not isinstance(log_level, str):
        raise ConfigError("log_level must be a string")
    return _validate(EngineConfig(
        stream=_parse_section(StreamSpec, raw.get("stream"), "stream"),
        tools=_parse_section(ToolSpec, raw.get("tools"), "tools"),
        request=_parse_section(RequestSpec, raw.get("request"), "request"),
        ids=_parse_section(IdSpec, raw.get("ids"), "ids"),
        permissions=_parse_section(PermissionSpec, raw.get("permissions"), "permissions"),
        log_level=log_level.upper(),
    ))


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load configuration from YAML.

    Parameters
    ----------
    path:
        Explicit config path.  If *None*, search default locations.

    Returns
    -------
    EngineConfig
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            _logger.warning("Config file not found: %s, using defaults", path)
            return EngineConfig()
    else:
        for candidate in _SEARCH_PATHS:
            if candidate.exists():
                config_path = candidate
                break

    if config_path is None:
        _logger.info("No config file found, using defaults")
        return EngineConfig()

    _logger.info("Loading config from %s", config_path)
    with open(config_path) as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse {config_path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"{config_path} must contain a mapping at top level")
    return config_from_dict(raw)
