from __future__ import annotations

import tempfile
import unittest
from pathlib import Path

from chatstate.config import (
    ConfigError,
    OptionalBool,
    PrivacyMode,
    load_settings,
    parse_duration,
    read_secret,
)


class ConfigTests(unittest.TestCase):
    def test_defaults_without_file(self) -> None:
        settings = load_settings(env={})
        self.assertIsNone(settings.bot.token)
        self.assertEqual(settings.bot.default_language, "en")
        self.assertTrue(settings.bot.delete_messages)
        self.assertEqual(settings.bot.parse_mode, "HTML")
        self.assertFalse(settings.bot.no_preview)
        self.assertEqual(settings.bot.privacy_mode, PrivacyMode.NO)
        self.assertEqual(settings.cache.capacity, 10000)
        self.assertEqual(settings.cache.ttl_seconds, 86400)
        self.assertEqual(settings.storage.db_path, Path.home() / "chatstate" / "chatstate.db")
        self.assertTrue(settings.log.enabled)
        self.assertTrue(settings.log.log_updates)
        self.assertEqual(settings.log.level, "info")
        self.assertFalse(settings.metrics.enabled)
        self.assertEqual(settings.metrics.port, 9090)

    def test_yaml_file_with_relative_paths(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "token.txt").write_text("123:abc\n", encoding="utf-8")
            config_path = root / "config.yaml"
            config_path.write_text(
                "\n".join(
                    [
                        "bot:",
                        "  token_file: token.txt",
                        "  default_language: RU",
                        "  delete_messages: false",
                        "  parse_mode: none",
                        "  privacy_mode: strict",
                        "  obtain_timeout: 500ms",
                        "cache:",
                        "  capacity: 50",
                        "  ttl: 15m",
                        "storage:",
                        "  db_path: data/state.db",
                        "log:",
                        "  level: warn",
                        "  format: json",
                    ]
                ),
                encoding="utf-8",
            )
            settings = load_settings(config_path, env={})

            self.assertEqual(settings.bot.token, "123:abc")
            self.assertEqual(settings.bot.default_language, "ru")
            self.assertFalse(settings.bot.delete_messages)
            self.assertIsNone(settings.bot.parse_mode)
            self.assertEqual(settings.bot.privacy_mode, PrivacyMode.STRICT)
            self.assertEqual(settings.bot.obtain_timeout, 0.5)
            self.assertEqual(settings.cache.capacity, 50)
            self.assertEqual(settings.cache.ttl_seconds, 900)
            self.assertEqual(settings.storage.db_path, root.resolve() / "data" / "state.db")
            self.assertEqual(settings.log.level, "warning")
            self.assertEqual(settings.log.format, "json")

    def test_environment_overrides_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config_path = Path(tmpdir) / "config.yaml"
            config_path.write_text("bot:\n  delete_messages: true\nlog:\n  log_updates: true\n", encoding="utf-8")
            settings = load_settings(
                config_path,
                env={
                    "CHATSTATE_TOKEN": "env-token",
                    "CHATSTATE_DELETE_MESSAGES": "off",
                    "CHATSTATE_LOG_UPDATES": "0",
                    "CHATSTATE_CACHE_TTL": "2h",
                    "CHATSTATE_LOG_ENABLE": "",
                },
            )
        self.assertEqual(settings.bot.token, "env-token")
        self.assertFalse(settings.bot.delete_messages)
        self.assertFalse(settings.log.log_updates)
        self.assertTrue(settings.log.enabled)
        self.assertEqual(settings.cache.ttl_seconds, 7200)

    def test_metrics_section_from_environment(self) -> None:
        settings = load_settings(
            env={"CHATSTATE_METRICS_ENABLE": "yes", "CHATSTATE_METRICS_PORT": "9102", "CHATSTATE_METRICS_NAMESPACE": "shop"}
        )
        self.assertTrue(settings.metrics.enabled)
        self.assertEqual(settings.metrics.port, 9102)
        self.assertEqual(settings.metrics.namespace, "shop")

    def test_invalid_values_raise_config_error(self) -> None:
        cases = [
            {"CHATSTATE_PRIVACY_MODE": "paranoid"},
            {"CHATSTATE_PARSE_MODE": "rst"},
            {"CHATSTATE_LOG_LEVEL": "trace"},
            {"CHATSTATE_DELETE_MESSAGES": "maybe"},
            {"CHATSTATE_CACHE_CAPACITY": "0"},
            {"CHATSTATE_OBTAIN_TIMEOUT": "soon"},
        ]
        for env in cases:
            with self.subTest(env=env):
                with self.assertRaises(ConfigError):
                    load_settings(env=env)

    def test_missing_config_file(self) -> None:
        with self.assertRaises(ConfigError):
            load_settings(Path("/nonexistent/chatstate.yaml"), env={})

    def test_optional_bool_keeps_unset_distinct(self) -> None:
        self.assertIs(OptionalBool.parse(None), OptionalBool.UNSET)
        self.assertIs(OptionalBool.parse("YES"), OptionalBool.TRUE)
        self.assertIs(OptionalBool.parse(False), OptionalBool.FALSE)
        self.assertTrue(OptionalBool.UNSET.resolve(True))
        self.assertFalse(OptionalBool.FALSE.resolve(True))

    def test_parse_duration(self) -> None:
        self.assertEqual(parse_duration(30), 30.0)
        self.assertEqual(parse_duration("90s"), 90.0)
        self.assertEqual(parse_duration("1d"), 86400.0)
        self.assertEqual(parse_duration("250ms"), 0.25)
        with self.assertRaises(ConfigError):
            parse_duration("-5m")

    def test_read_secret(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "secret"
            self.assertIsNone(read_secret(path))
            path.write_text("  \n", encoding="utf-8")
            self.assertIsNone(read_secret(path))
            path.write_text("value\n", encoding="utf-8")
            self.assertEqual(read_secret(path), "value")


if __name__ == "__main__":
    unittest.main()
