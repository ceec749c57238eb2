"""
Bot Configuration Schema

Defines the configuration structure for the bot.
All configuration can be specified via bot.yaml or environment variables.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..channels.base import TransportOptions
from ..lifecycle.classifier import (
    DEFAULT_AUTH_FAILURE_MARKERS,
    DEFAULT_CONNECTION_FAILURE_MARKERS,
    DEFAULT_NETWORK_ERROR_MARKERS,
    LOGGED_OUT_STATUS_CODE,
    DisconnectClassifier,
)
from ..lifecycle.pairing import normalize_phone_number
from ..lifecycle.state import LifecyclePolicy
from ..errors import ConfigInvalid


def flag_true(value: Any) -> bool:
    """Opt-in flag: only true or "true" enables it"""
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def flag_not_false(value: Any) -> bool:
    """Opt-out flag: anything but false or "false" keeps it enabled"""
    if isinstance(value, str):
        return value.strip().lower() != "false"
    return value is not False


@dataclass
class BridgeConfig:
    """Connection to the Node.js WhatsApp bridge"""
    http_url: str = "http://localhost:3000"
    ws_url: str = "ws://localhost:3001"
    browser: Tuple[str, str, str] = ("WhatsApp Bot", "Chrome", "1.0.0")
    connect_timeout_ms: int = 60000
    default_query_timeout_ms: int = 60000
    keep_alive_interval_ms: int = 30000
    mark_online_on_connect: bool = True
    sync_full_history: bool = False

    def transport_options(self) -> TransportOptions:
        return TransportOptions(
            browser=tuple(self.browser),
            connect_timeout_ms=self.connect_timeout_ms,
            default_query_timeout_ms=self.default_query_timeout_ms,
            keep_alive_interval_ms=self.keep_alive_interval_ms,
            mark_online_on_connect=self.mark_online_on_connect,
            sync_full_history=self.sync_full_history,
        )


@dataclass
class SessionConfig:
    """Where credential material is persisted"""
    folder: str = "./sessions"


@dataclass
class RetryConfig:
    """Reconnection limits, delays (seconds) and disconnect markers"""
    max_connection_attempts: int = 10
    base_delay: float = 5.0
    step_delay: float = 2.0
    cap_delay: float = 30.0
    fresh_session_delay: float = 3.0
    logged_out_status_code: int = LOGGED_OUT_STATUS_CODE
    connection_failure_markers: List[str] = field(
        default_factory=lambda: list(DEFAULT_CONNECTION_FAILURE_MARKERS)
    )
    auth_failure_markers: List[str] = field(default_factory=lambda: list(DEFAULT_AUTH_FAILURE_MARKERS))
    network_error_markers: List[str] = field(default_factory=lambda: list(DEFAULT_NETWORK_ERROR_MARKERS))


@dataclass
class PairingConfig:
    """Pairing-code authentication"""
    phone_number: Optional[str] = None
    country_code: str = "27"
    national_length: int = 9
    max_attempts: int = 5
    base_delay: float = 5.0
    max_delay: float = 15.0
    cooldown: float = 10.0
    settle_delay: float = 3.0


@dataclass
class RateLimitConfig:
    """Per-user command rate limit"""
    max_requests: int = 10
    window_seconds: float = 60.0


@dataclass
class SupervisorConfig:
    """Process-level restart policy"""
    max_restarts: int = 5
    restart_delay: float = 5.0
    shutdown_timeout: float = 10.0


_SECTIONS = {
    "bridge": BridgeConfig,
    "session": SessionConfig,
    "retry": RetryConfig,
    "pairing": PairingConfig,
    "rate_limit": RateLimitConfig,
    "supervisor": SupervisorConfig,
}


def _section(cls, data: Optional[Dict[str, Any]]):
    data = data or {}
    known = cls.__dataclass_fields__
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigInvalid(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    return cls(**data)


@dataclass
class BotConfig:
    """
    Central configuration for the bot.

    Example bot.yaml:
    ```yaml
    bot:
      name: "WhatsApp Bot"
      prefix: "."
      owner_number: "${OWNER_NUMBER:-}"
      private_mode: true

    pairing:
      phone_number: "${PHONE_NUMBER}"

    retry:
      max_connection_attempts: 10
      base_delay: 5
    ```
    """
    # Bot identity and behaviour
    name: str = "WhatsApp Bot"
    prefix: str = "."
    owner_number: Optional[str] = None
    admin_numbers: List[str] = field(default_factory=list)
    private_mode: bool = True
    auto_read: bool = False
    auto_typing: bool = False

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    pairing: PairingConfig = field(default_factory=PairingConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)

    working_dir: Path = field(default_factory=Path.cwd)

    @property
    def session_dir(self) -> Path:
        folder = Path(self.session.folder)
        return folder if folder.is_absolute() else self.working_dir / folder

    def lifecycle_policy(self) -> LifecyclePolicy:
        retry = self.retry
        classifier = DisconnectClassifier(
            logged_out_status_code=retry.logged_out_status_code,
            rules=DisconnectClassifier.default_rules(
                connection_failure_markers=retry.connection_failure_markers,
                auth_failure_markers=retry.auth_failure_markers,
                network_error_markers=retry.network_error_markers,
            ),
        )
        return LifecyclePolicy(
            max_connection_attempts=retry.max_connection_attempts,
            base_delay=retry.base_delay,
            step_delay=retry.step_delay,
            cap_delay=retry.cap_delay,
            fresh_session_delay=retry.fresh_session_delay,
            max_pairing_attempts=self.pairing.max_attempts,
            pairing_base_delay=self.pairing.base_delay,
            pairing_max_delay=self.pairing.max_delay,
            pairing_cooldown=self.pairing.cooldown,
            classifier=classifier,
        )

    def validate(self) -> Tuple[bool, List[str]]:
        """
        Validate configuration.

        Returns:
            (is_valid, error_messages)
        """
        errors = []

        if not self.prefix:
            errors.append("prefix must not be empty")

        if not self.bridge.http_url.startswith(("http://", "https://")):
            errors.append("Invalid bridge.http_url: must start with http:// or https://")
        if not self.bridge.ws_url.startswith(("ws://", "wss://")):
            errors.append("Invalid bridge.ws_url: must start with ws:// or wss://")

        for name in ("max_connection_attempts",):
            if getattr(self.retry, name) < 1:
                errors.append(f"retry.{name} must be at least 1")
        if self.pairing.max_attempts < 1:
            errors.append("pairing.max_attempts must be at least 1")

        for section, names in (
            (self.retry, ("base_delay", "step_delay", "cap_delay", "fresh_session_delay")),
            (self.pairing, ("base_delay", "max_delay", "cooldown", "settle_delay")),
        ):
            for name in names:
                if getattr(section, name) < 0:
                    errors.append(f"{type(section).__name__}.{name} must not be negative")

        if self.rate_limit.max_requests < 1 or self.rate_limit.window_seconds <= 0:
            errors.append("rate_limit needs max_requests >= 1 and a positive window_seconds")

        if self.pairing.phone_number:
            try:
                normalize_phone_number(
                    self.pairing.phone_number, self.pairing.country_code, self.pairing.national_length
                )
            except ConfigInvalid as e:
                errors.append(str(e))

        return (len(errors) == 0, errors)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        """Create BotConfig from dictionary (e.g., parsed YAML)"""
        bot_data = dict(data.get("bot", {}) or {})

        admin_numbers = bot_data.get("admin_numbers", [])
        if isinstance(admin_numbers, str):
            admin_numbers = [n.strip() for n in admin_numbers.split(",") if n.strip()]

        sections = {name: _section(section_cls, data.get(name)) for name, section_cls in _SECTIONS.items()}
        if isinstance(sections["bridge"].browser, list):
            sections["bridge"].browser = tuple(sections["bridge"].browser)

        return cls(
            name=bot_data.get("name", "WhatsApp Bot"),
            prefix=str(bot_data.get("prefix", ".")),
            owner_number=str(bot_data["owner_number"]) if bot_data.get("owner_number") else None,
            admin_numbers=[str(n) for n in admin_numbers],
            private_mode=flag_not_false(bot_data.get("private_mode", True)),
            auto_read=flag_true(bot_data.get("auto_read", False)),
            auto_typing=flag_true(bot_data.get("auto_typing", False)),
            log_level=str(data.get("logging", {}).get("level", "INFO")).upper(),
            log_file=data.get("logging", {}).get("file"),
            working_dir=Path(data.get("working_dir", ".")),
            **sections,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary (for serialization)"""
        from dataclasses import asdict

        data = {
            "bot": {
                "name": self.name,
                "prefix": self.prefix,
                "owner_number": self.owner_number,
                "admin_numbers": list(self.admin_numbers),
                "private_mode": self.private_mode,
                "auto_read": self.auto_read,
                "auto_typing": self.auto_typing,
            },
            "logging": {"level": self.log_level, "file": self.log_file},
            "working_dir": str(self.working_dir),
        }
        for name in _SECTIONS:
            data[name] = asdict(getattr(self, name))
        data["bridge"]["browser"] = list(self.bridge.browser)
        return data
