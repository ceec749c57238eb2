"""
Bot Configuration Loader

Loads configuration from YAML files with environment variable interpolation,
then applies the flat environment overrides operators use with .env files.

Environment Variable Interpolation:
- ${VAR_NAME} - Required variable, raises error if not set
- ${VAR_NAME:-default} - Optional variable with default value

Example:
```yaml
pairing:
  phone_number: "${PHONE_NUMBER}"
bridge:
  http_url: "${BRIDGE_URL:-http://localhost:3000}"
```
"""

import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union
import logging

import yaml

from ..errors import ConfigInvalid
from .schema import BotConfig, flag_not_false, flag_true

logger = logging.getLogger(__name__)

# Pattern for environment variable substitution: ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r'\$\{([^}:]+)(?::-([^}]*))?\}')

CONFIG_FILENAME = "bot.yaml"


def _number_list(value: str):
    return [n.strip() for n in value.split(",") if n.strip()]


def _ms_to_seconds(value: str) -> float:
    return int(value) / 1000.0


# ENV name -> (dotted attribute path on BotConfig, parser)
ENV_OVERRIDES: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "BOT_NAME": ("name", str),
    "PREFIX": ("prefix", str),
    "OWNER_NUMBER": ("owner_number", str),
    "ADMIN_NUMBERS": ("admin_numbers", _number_list),
    "PRIVATE_MODE": ("private_mode", flag_not_false),
    "AUTO_READ": ("auto_read", flag_true),
    "AUTO_TYPING": ("auto_typing", flag_true),
    "LOG_LEVEL": ("log_level", lambda v: v.upper()),
    "LOG_FILE": ("log_file", str),
    "PHONE_NUMBER": ("pairing.phone_number", str),
    "SESSION_FOLDER": ("session.folder", str),
    "BRIDGE_URL": ("bridge.http_url", str),
    "BRIDGE_WS_URL": ("bridge.ws_url", str),
    "RATE_LIMIT_MAX": ("rate_limit.max_requests", int),
    "RATE_LIMIT_WINDOW": ("rate_limit.window_seconds", _ms_to_seconds),
    "MAX_CONNECTION_ATTEMPTS": ("retry.max_connection_attempts", int),
    "MAX_PAIRING_ATTEMPTS": ("pairing.max_attempts", int),
}


def interpolate_env_vars(value: Any, environ: Optional[Mapping[str, str]] = None) -> Any:
    """
    Recursively interpolate environment variables in configuration values.

    Supports:
    - ${VAR_NAME} - Required, raises KeyError if not set
    - ${VAR_NAME:-default} - Optional with default value

    Args:
        value: Configuration value (string, dict, list, or primitive)
        environ: Mapping to read variables from (default: os.environ)

    Returns:
        Value with environment variables interpolated
    """
    environ = os.environ if environ is None else environ

    if isinstance(value, str):
        def replace_env_var(match):
            var_name = match.group(1)
            default_value = match.group(2)

            env_value = environ.get(var_name)

            if env_value is not None:
                return env_value
            elif default_value is not None:
                return default_value
            else:
                raise KeyError(
                    f"Environment variable '{var_name}' is required but not set. "
                    f"Set it or provide a default: ${{{var_name}:-default}}"
                )

        return ENV_VAR_PATTERN.sub(replace_env_var, value)

    elif isinstance(value, dict):
        return {k: interpolate_env_vars(v, environ) for k, v in value.items()}

    elif isinstance(value, list):
        return [interpolate_env_vars(item, environ) for item in value]

    else:
        return value


def apply_env_overrides(config: BotConfig, environ: Optional[Mapping[str, str]] = None) -> BotConfig:
    """
    Overlay flat environment variables (see ENV_OVERRIDES) onto a config.

    Empty variables are ignored.

    Raises:
        ConfigInvalid: If a variable cannot be parsed
    """
    environ = os.environ if environ is None else environ

    for env_name, (path, parse) in ENV_OVERRIDES.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = parse(raw)
        except ValueError as e:
            raise ConfigInvalid(f"Invalid value for {env_name}: {raw!r}") from e

        target = config
        *parents, attr = path.split(".")
        for parent in parents:
            target = getattr(target, parent)
        setattr(target, attr, value)
        logger.debug(f"Configuration override from {env_name}")

    return config


def load_config_from_file(
    config_path: Union[str, Path],
    interpolate: bool = True,
    environ: Optional[Mapping[str, str]] = None,
) -> BotConfig:
    """
    Load bot configuration from a YAML file.

    Args:
        config_path: Path to bot.yaml configuration file
        interpolate: Whether to interpolate environment variables (default: True)
        environ: Mapping to read variables from (default: os.environ)

    Returns:
        BotConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        KeyError: If required environment variable is not set
        yaml.YAMLError: If YAML is malformed
        ConfigInvalid: If the file contains unknown keys
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f)

    if raw_config is None:
        raw_config = {}

    # Interpolate environment variables
    if interpolate:
        try:
            raw_config = interpolate_env_vars(raw_config, environ)
        except KeyError as e:
            logger.error(f"Configuration error: {e}")
            raise

    # Set working directory to config file's directory if not specified
    if "working_dir" not in raw_config:
        raw_config["working_dir"] = str(config_path.parent.absolute())

    return BotConfig.from_dict(raw_config)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    working_dir: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> BotConfig:
    """
    Load bot configuration with sensible defaults.

    Search order for configuration:
    1. Explicit config_path if provided
    2. bot.yaml (or config/bot.yaml) in working_dir
    3. bot.yaml (or config/bot.yaml) in current directory
    4. Default configuration

    Environment overrides are applied on top in every case.

    Args:
        config_path: Explicit path to configuration file
        working_dir: Working directory to search for bot.yaml
        environ: Mapping to read variables from (default: os.environ)

    Returns:
        BotConfig instance
    """
    if config_path:
        config = load_config_from_file(config_path, environ=environ)
        return apply_env_overrides(config, environ)

    search_paths = []

    if working_dir:
        working_dir = Path(working_dir)
        search_paths.append(working_dir / CONFIG_FILENAME)
        search_paths.append(working_dir / "config" / CONFIG_FILENAME)

    cwd = Path.cwd()
    search_paths.append(cwd / CONFIG_FILENAME)
    search_paths.append(cwd / "config" / CONFIG_FILENAME)

    for path in search_paths:
        if path.exists():
            logger.info(f"Found configuration at {path}")
            config = load_config_from_file(path, environ=environ)
            return apply_env_overrides(config, environ)

    logger.info(f"No {CONFIG_FILENAME} found, using default configuration")
    config = BotConfig(working_dir=Path(working_dir) if working_dir else cwd)
    return apply_env_overrides(config, environ)


def create_default_config(
    output_path: Optional[Union[str, Path]] = None,
    bot_name: str = "WhatsApp Bot",
) -> Path:
    """
    Create a default bot.yaml configuration file.

    Args:
        output_path: Where to write the config (default: ./bot.yaml)
        bot_name: Display name used in replies

    Returns:
        Path to created configuration file
    """
    output_path = Path(output_path) if output_path else Path(CONFIG_FILENAME)

    default_config = f"""# WhatsApp Bot Configuration
# Environment variables can be used: ${{VAR_NAME}} or ${{VAR_NAME:-default}}

bot:
  name: "{bot_name}"
  prefix: "."
  owner_number: "${{OWNER_NUMBER:-}}"
  private_mode: true
  auto_read: false
  auto_typing: false

logging:
  level: "INFO"

# Node.js bridge running the WhatsApp Web protocol
bridge:
  http_url: "${{BRIDGE_URL:-http://localhost:3000}}"
  ws_url: "${{BRIDGE_WS_URL:-ws://localhost:3001}}"

session:
  folder: "./sessions"

# Number to link as a companion device
pairing:
  phone_number: "${{PHONE_NUMBER:-}}"
  max_attempts: 5
  cooldown: 10

retry:
  max_connection_attempts: 10
  base_delay: 5
  step_delay: 2
  cap_delay: 30

rate_limit:
  max_requests: 10
  window_seconds: 60
"""

    with open(output_path, 'w') as f:
        f.write(default_config)

    logger.info(f"Created default configuration at {output_path}")
    return output_path
