"""
Configuration loader.

Sources, lowest to highest precedence:
  1. built-in defaults
  2. JSON config file (./config.json, or --config PATH)
  3. .env file + process environment
  4. command line flags

Every problem found is collected and reported together in a single
ConfigError so an operator can fix the whole file in one pass.
"""

from __future__ import annotations

import argparse
import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from dotenv import load_dotenv

from shared.logging.logger import LEVELS, get_logger

log = get_logger("core.config_loader")

DEFAULT_CONFIG_PATH = Path("config.json")


class ConfigError(Exception):
    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__(
            "Invalid configuration:\n" + "\n".join(f"  - {p}" for p in self.problems)
        )


@dataclass
class BridgeConfig:
    twitch_username: str = ""
    twitch_password: str = ""
    twitch_client_id: str = ""

    discord_bot_token: str = ""
    discord_status_channel_id: int = 0

    host: str = "0.0.0.0"
    port: int = 8080
    secret_key: str = ""

    log_level: str = "info"
    log_dir: str = ""

    heartbeat_interval_ms: int = 15000
    join_timeout: float = 10.0
    max_reconnect_attempts: int = 0

    @property
    def heartbeat_interval(self) -> float:
        """Heartbeat interval in seconds."""
        return self.heartbeat_interval_ms / 1000.0

    @property
    def discord_enabled(self) -> bool:
        return bool(self.discord_bot_token and self.discord_status_channel_id)

    def redacted(self) -> Dict[str, Any]:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name in ("twitch_password", "discord_bot_token", "secret_key"):
                value = "SET" if value else "MISSING"
            out[f.name] = value
        return out


# field -> (path in the JSON file, environment variable)
_SOURCES: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "twitch_username": (("twitch", "username"), "TWITCH_USERNAME"),
    "twitch_password": (("twitch", "password"), "TWITCH_PASSWORD"),
    "twitch_client_id": (("twitch", "client_id"), "TWITCH_CLIENT_ID"),
    "discord_bot_token": (("discord", "bot_token"), "DISCORD_BOT_TOKEN"),
    "discord_status_channel_id": (("discord", "status_channel_id"), "DISCORD_STATUS_CHANNEL_ID"),
    "host": (("host",), "HOST"),
    "port": (("port",), "PORT"),
    "secret_key": (("secret_key",), "SECRET_KEY"),
    "log_level": (("log_level",), "LOG_LEVEL"),
    "log_dir": (("log_dir",), "LOG_DIR"),
    "heartbeat_interval_ms": (("heartbeat_interval_ms",), "HEARTBEAT_INTERVAL_MS"),
    "join_timeout": (("join_timeout",), "JOIN_TIMEOUT"),
    "max_reconnect_attempts": (("max_reconnect_attempts",), "MAX_RECONNECT_ATTEMPTS"),
}

_REQUIRED = ("twitch_username", "twitch_password", "secret_key")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chatrelay",
        description="Relay Twitch chat events to downstream WebSocket consumers",
    )
    parser.add_argument("--config", help="Path to a JSON config file (default: ./config.json)")
    parser.add_argument("--env-file", help="Path to a .env file (default: ./.env)")
    parser.add_argument("--host", help="Listen address")
    parser.add_argument("--port", help="Listen port")
    parser.add_argument("--log-level", dest="log_level", help="trace | debug | info | warn | error")
    parser.add_argument("--log-dir", dest="log_dir", help="Directory for per-run log files")
    parser.add_argument(
        "--heartbeat-interval-ms",
        dest="heartbeat_interval_ms",
        help="Heartbeat interval handed to downstream consumers",
    )
    parser.add_argument("--join-timeout", dest="join_timeout", help="Seconds to wait for a join")
    parser.add_argument(
        "--max-reconnect-attempts",
        dest="max_reconnect_attempts",
        help="Upstream reconnect budget (0 = unlimited)",
    )
    return parser


# ----------------------------------------------------------------------
# Layers
# ----------------------------------------------------------------------

def _load_file(path: Path, explicit: bool, problems: List[str]) -> Dict[str, Any]:
    if not path.exists():
        if explicit:
            problems.append(f"config file not found: {path}")
        return {}

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        problems.append(f"could not read config file {path}: {e}")
        return {}

    if not isinstance(data, dict):
        problems.append(f"config file {path} must contain a JSON object")
        return {}

    values: Dict[str, Any] = {}
    for name, (json_path, _) in _SOURCES.items():
        node: Any = data
        for key in json_path:
            if not isinstance(node, dict) or key not in node:
                node = None
                break
            node = node[key]
        if node is not None:
            values[name] = node

    log.info(f"Loaded config file {path}")
    return values


def _load_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name, (_, env_key) in _SOURCES.items():
        raw = environ.get(env_key)
        if raw is not None and raw.strip() != "":
            values[name] = raw.strip()
    return values


def _load_cli(args: argparse.Namespace) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in _SOURCES:
        value = getattr(args, name, None)
        if value is not None:
            values[name] = value
    return values


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("expected an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError("expected an integer")
        return int(value)
    return int(str(value).strip())


def _as_float(value: Any) -> float:
    if isinstance(value, bool):
        raise ValueError("expected a number")
    return float(str(value).strip())


def _as_str(value: Any) -> str:
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ValueError("expected a string")
    return str(value).strip()


_CONVERTERS: Dict[str, Callable[[Any], Any]] = {
    "discord_status_channel_id": _as_int,
    "port": _as_int,
    "heartbeat_interval_ms": _as_int,
    "join_timeout": _as_float,
    "max_reconnect_attempts": _as_int,
}


def _build(values: Dict[str, Any], problems: List[str]) -> BridgeConfig:
    config = BridgeConfig()

    for name, raw in values.items():
        convert = _CONVERTERS.get(name, _as_str)
        try:
            setattr(config, name, convert(raw))
        except (TypeError, ValueError):
            problems.append(f"{name}: invalid value {raw!r}")

    for name in _REQUIRED:
        if not getattr(config, name):
            problems.append(f"{name} is required ({_SOURCES[name][1]})")

    config.log_level = config.log_level.lower()
    if config.log_level not in LEVELS:
        problems.append(f"log_level: unknown level {config.log_level!r}")

    if not 0 <= config.port <= 65535:
        problems.append(f"port: {config.port} is out of range")
    if config.heartbeat_interval_ms <= 0:
        problems.append("heartbeat_interval_ms must be positive")
    if config.join_timeout <= 0:
        problems.append("join_timeout must be positive")
    if config.max_reconnect_attempts < 0:
        problems.append("max_reconnect_attempts must be 0 (unlimited) or positive")
    if config.discord_bot_token and not config.discord_status_channel_id:
        problems.append("discord_status_channel_id is required when a Discord bot token is set")

    return config


def load_config(
    argv: Optional[Sequence[str]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> BridgeConfig:
    """
    Build the bridge configuration from every source.

    Passing `environ` skips .env loading and reads only that mapping,
    which keeps tests independent of the process environment.
    """
    args = build_arg_parser().parse_args(argv)
    problems: List[str] = []

    if environ is None:
        if args.env_file:
            load_dotenv(args.env_file)
        else:
            load_dotenv()
        environ = os.environ

    values: Dict[str, Any] = {}
    if args.config:
        values.update(_load_file(Path(args.config), True, problems))
    else:
        values.update(_load_file(DEFAULT_CONFIG_PATH, False, problems))
    values.update(_load_env(environ))
    values.update(_load_cli(args))

    config = _build(values, problems)
    if problems:
        raise ConfigError(problems)

    log.debug(f"Resolved configuration: {config.redacted()}")
    return config


__all__ = ["BridgeConfig", "ConfigError", "load_config", "build_arg_parser"]
