"""
Test configuration loading
"""

import pytest

from wabot.config import BotConfig, apply_env_overrides, create_default_config, load_config, load_config_from_file
from wabot.config.loader import interpolate_env_vars
from wabot.errors import ConfigInvalid
from wabot.lifecycle.classifier import DisconnectCause


class TestInterpolation:

    def test_required_and_default(self):
        env = {"PHONE_NUMBER": "0683913716"}
        value = interpolate_env_vars(
            {"a": "${PHONE_NUMBER}", "b": ["${MISSING:-x}"], "c": 5}, env
        )
        assert value == {"a": "0683913716", "b": ["x"], "c": 5}

    def test_missing_required_raises(self):
        with pytest.raises(KeyError):
            interpolate_env_vars("${NOPE}", {})


class TestBotConfig:

    def test_defaults(self):
        config = BotConfig()
        assert config.prefix == "."
        assert config.private_mode is True
        assert config.retry.max_connection_attempts == 10
        assert config.pairing.max_attempts == 5
        assert config.validate() == (True, [])

    def test_lifecycle_policy(self):
        config = BotConfig()
        config.retry.base_delay = 1
        config.retry.network_error_markers = ["flaky"]
        config.pairing.cooldown = 42

        policy = config.lifecycle_policy()

        assert policy.base_delay == 1
        assert policy.pairing_cooldown == 42
        assert policy.classifier.classify(None, "FLAKY link") is DisconnectCause.NETWORK_ERROR
        assert policy.classifier.classify(None, "timeout") is DisconnectCause.UNKNOWN

    def test_from_dict(self, tmp_path):
        config = BotConfig.from_dict({
            "bot": {"name": "Zushi", "prefix": "!", "admin_numbers": "271, 272", "private_mode": False},
            "pairing": {"phone_number": "0683913716"},
            "bridge": {"browser": ["Bot", "Safari", "2.0"]},
            "logging": {"level": "debug"},
            "working_dir": str(tmp_path),
        })
        assert config.name == "Zushi"
        assert config.prefix == "!"
        assert config.admin_numbers == ["271", "272"]
        assert config.private_mode is False
        assert config.bridge.browser == ("Bot", "Safari", "2.0")
        assert config.log_level == "DEBUG"
        assert config.session_dir == tmp_path / "sessions"

    def test_interpolated_flags(self, tmp_path):
        path = tmp_path / "bot.yaml"
        path.write_text(
            "bot:\n"
            "  private_mode: \"${PRIVATE_MODE:-false}\"\n"
            "  auto_read: \"${AUTO_READ:-true}\"\n"
            "  auto_typing: \"${AUTO_TYPING:-no}\"\n"
        )
        config = load_config_from_file(path, environ={})

        assert config.private_mode is False
        assert config.auto_read is True
        assert config.auto_typing is False

    def test_yaml_booleans(self):
        config = BotConfig.from_dict({"bot": {"private_mode": False, "auto_read": True}})
        assert config.private_mode is False
        assert config.auto_read is True

    def test_unknown_section_key(self):
        with pytest.raises(ConfigInvalid):
            BotConfig.from_dict({"retry": {"max_attempts": 3}})

    def test_validate_reports_problems(self):
        config = BotConfig()
        config.pairing.phone_number = "123"
        config.retry.base_delay = -1
        config.bridge.ws_url = "http://localhost:3001"

        valid, errors = config.validate()

        assert not valid
        assert len(errors) == 3
        assert any("123" in e for e in errors)

    def test_to_dict_round_trip(self, tmp_path):
        config = BotConfig(name="Zushi", working_dir=tmp_path)
        config.pairing.phone_number = "27683913716"
        restored = BotConfig.from_dict(config.to_dict())
        assert restored.name == "Zushi"
        assert restored.pairing.phone_number == "27683913716"
        assert restored.bridge.browser == config.bridge.browser


class TestEnvOverrides:

    def test_bot_variables(self):
        env = {
            "BOT_NAME": "Zushi",
            "PREFIX": "#",
            "OWNER_NUMBER": "27683913716",
            "PHONE_NUMBER": "0683913716",
            "ADMIN_NUMBERS": "27111111111,27222222222",
            "PRIVATE_MODE": "false",
            "AUTO_READ": "true",
            "AUTO_TYPING": "yes",
            "RATE_LIMIT_MAX": "3",
            "RATE_LIMIT_WINDOW": "30000",
            "SESSION_FOLDER": "/var/lib/wabot",
            "LOG_LEVEL": "warning",
        }
        config = apply_env_overrides(BotConfig(), env)

        assert config.name == "Zushi"
        assert config.prefix == "#"
        assert config.owner_number == "27683913716"
        assert config.pairing.phone_number == "0683913716"
        assert config.admin_numbers == ["27111111111", "27222222222"]
        assert config.private_mode is False
        assert config.auto_read is True
        # Only the literal "true" enables opt-in flags
        assert config.auto_typing is False
        assert config.rate_limit.max_requests == 3
        assert config.rate_limit.window_seconds == 30.0
        assert str(config.session_dir) == "/var/lib/wabot"
        assert config.log_level == "WARNING"

    def test_private_mode_stays_on(self):
        assert apply_env_overrides(BotConfig(), {"PRIVATE_MODE": "no"}).private_mode is True

    def test_empty_values_ignored(self):
        assert apply_env_overrides(BotConfig(), {"BOT_NAME": ""}).name == "WhatsApp Bot"

    def test_bad_number(self):
        with pytest.raises(ConfigInvalid):
            apply_env_overrides(BotConfig(), {"RATE_LIMIT_MAX": "lots"})


class TestLoadConfig:

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "bot.yaml"
        path.write_text(
            "bot:\n"
            "  name: \"${BOT_LABEL:-Fallback}\"\n"
            "pairing:\n"
            "  phone_number: \"${PHONE}\"\n"
            "retry:\n"
            "  max_connection_attempts: 4\n"
        )
        config = load_config_from_file(path, environ={"PHONE": "0683913716"})

        assert config.name == "Fallback"
        assert config.pairing.phone_number == "0683913716"
        assert config.retry.max_connection_attempts == 4
        assert config.working_dir == tmp_path.absolute()

    def test_search_order(self, tmp_path):
        (tmp_path / "config").mkdir()
        (tmp_path / "config" / "bot.yaml").write_text("bot:\n  name: Nested\n")
        assert load_config(working_dir=tmp_path, environ={}).name == "Nested"

        (tmp_path / "bot.yaml").write_text("bot:\n  name: Top\n")
        assert load_config(working_dir=tmp_path, environ={}).name == "Top"

    def test_env_applies_over_file(self, tmp_path):
        path = tmp_path / "bot.yaml"
        path.write_text("bot:\n  name: FromFile\n")
        assert load_config(path, environ={"BOT_NAME": "FromEnv"}).name == "FromEnv"

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml", environ={})

    def test_defaults_without_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        config = load_config(environ={})
        assert config.name == "WhatsApp Bot"
        assert config.working_dir.resolve() == tmp_path.resolve()

    def test_default_template_loads(self, tmp_path):
        path = create_default_config(tmp_path / "bot.yaml", bot_name="Zushi")
        config = load_config_from_file(path, environ={})
        assert config.name == "Zushi"
        assert config.pairing.phone_number == ""
        assert config.validate() == (True, [])
