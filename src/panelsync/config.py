"""Configuration for a panelsync server.

The configuration is a plain JSON file whose keys mirror the fields of
`PanelConfig`, with the dashboard login nested under `"account"`:

    {
        "host": "0.0.0.0",
        "port": 8765,
        "account": {"username": "admin", "password": "s3cret"},
        "chat_name": "[Panel]"
    }

Every key is optional. `load_config()` falls back to the defaults below for
anything the file leaves out, and to the file named by the `PANELSYNC_CONFIG`
environment variable when no path is given.
"""

import dataclasses
import json
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from . import logger
from .exceptions import ConfigError

CONFIG_ENV_VAR = "PANELSYNC_CONFIG"


@dataclass
class AccountConfig:
    """The single dashboard login.

    Attributes:
        username (str): Expected login name.
        password (str): Expected password, compared in constant time.
    """
    username: str = "admin"
    password: str = "admin"


@dataclass
class PanelConfig:
    """All settings of one panel server.

    Attributes:
        host (str): Interface the WebSocket listener binds to.
        port (int): Port of the WebSocket listener.
        account (AccountConfig): Dashboard credentials.
        chat_name (str): Sender name used for chat messages sent from the panel.
        server_name (str): Initial `server.info.name`.
        level_name (str): Initial `server.info.level`.
        max_players (int): Initial `server.info.players.max`.
        game_port (int): Port of the game server, shown as `machine.network.port`.
        sample_interval (float): Seconds between resource usage samples.
        sample_history (int): How many samples each usage window keeps.
        uptime_interval (float): Seconds between `server.uptime` updates.
        max_pending_messages (int): Outbound queue bound per subscriber.
        max_log_entries (int): How many entries each `server.logs` list keeps.
        capture_console (bool): Mirror log records into `server.logs.console`.
        permissions_file (str): JSON file mirrored into `server.game.permissions`
            and re-read whenever it changes. Empty disables it.
        permissions_poll_interval (float): Seconds between checks of that file.
    """
    host: str = "0.0.0.0"
    port: int = 8765
    account: AccountConfig = field(default_factory=AccountConfig)
    chat_name: str = "[Panel]"
    server_name: str = "Dedicated Server"
    level_name: str = "Bedrock level"
    max_players: int = 10
    game_port: int = 19132
    sample_interval: float = 60.0
    sample_history: int = 30
    uptime_interval: float = 1.0
    max_pending_messages: int = 1000
    max_log_entries: int = 500
    capture_console: bool = True
    permissions_file: str = "permissions.json"
    permissions_poll_interval: float = 2.0


def _check_type(name: str, value: Any, expected: Any, source: Optional[str]) -> Any:
    if expected is float and isinstance(value, int) and not isinstance(value, bool):
        return float(value)
    if expected is int and isinstance(value, bool):
        raise ConfigError(f"Option '{name}' must be an integer, got a boolean", source=source)
    if not isinstance(value, expected):
        raise ConfigError(
            f"Option '{name}' must be of type {expected.__name__}, got {type(value).__name__}",
            source=source,
        )
    return value


def _build(cls: Any, data: Dict[str, Any], source: Optional[str], prefix: str = "") -> Any:
    kwargs: Dict[str, Any] = {}
    types = {f.name: f.type for f in dataclasses.fields(cls)}
    for name, value in data.items():
        qualified = f"{prefix}{name}"
        if name not in types:
            logger.warning(f"Ignoring unknown configuration option '{qualified}'.")
            continue
        expected = types[name]
        if expected is AccountConfig:
            if not isinstance(value, dict):
                raise ConfigError(f"Option '{qualified}' must be an object", source=source)
            kwargs[name] = _build(AccountConfig, value, source, prefix=f"{qualified}.")
        else:
            kwargs[name] = _check_type(qualified, value, expected, source)
    return cls(**kwargs)


def config_from_dict(data: Dict[str, Any], source: Optional[str] = None) -> PanelConfig:
    """Builds a `PanelConfig` from already-parsed JSON data.

    Raises:
        ConfigError: If `data` is not an object or an option has the wrong type.
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a JSON object", source=source)
    config = _build(PanelConfig, data, source)
    if not 0 < config.port < 65536:
        raise ConfigError(f"Option 'port' is out of range: {config.port}", source=source)
    if config.sample_history < 1 or config.max_pending_messages < 1 or config.max_log_entries < 1:
        raise ConfigError("Options 'sample_history', 'max_pending_messages' and 'max_log_entries' must be positive", source=source)
    return config


def load_config(path: Optional[str] = None) -> PanelConfig:
    """Loads the panel configuration.

    Args:
        path (Optional[str]): JSON file to read. Defaults to the value of the
            `PANELSYNC_CONFIG` environment variable. With neither, the built-in
            defaults are used.

    Returns:
        PanelConfig: The loaded configuration. A missing file yields the
            defaults (with a warning) rather than an error.

    Raises:
        ConfigError: If the file exists but cannot be read, is not valid JSON,
            or holds an option of the wrong type.
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        logger.debug("No configuration file given; using defaults.")
        return PanelConfig()
    if not os.path.exists(path):
        logger.warning(f"Configuration file '{path}' not found; using defaults.")
        return PanelConfig()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError("Configuration file is not valid JSON", source=path, original_exception=e) from e
    except OSError as e:
        raise ConfigError("Could not read configuration file", source=path, original_exception=e) from e
    config = config_from_dict(data, source=path)
    logger.info(f"Loaded configuration from '{path}'.")
    return config
