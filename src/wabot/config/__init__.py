"""
Bot Configuration Module

Provides centralized configuration management for the bot.
"""

from .schema import (
    BotConfig,
    BridgeConfig,
    PairingConfig,
    RateLimitConfig,
    RetryConfig,
    SessionConfig,
    SupervisorConfig,
)
from .loader import apply_env_overrides, create_default_config, load_config, load_config_from_file

__all__ = [
    "BotConfig",
    "BridgeConfig",
    "PairingConfig",
    "RateLimitConfig",
    "RetryConfig",
    "SessionConfig",
    "SupervisorConfig",
    "apply_env_overrides",
    "create_default_config",
    "load_config",
    "load_config_from_file",
]
