"""Settings loader: YAML file plus CHATSTATE_* environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

ENV_PREFIX = "CHATSTATE_"

DEFAULT_LANGUAGE = "en"
DEFAULT_CACHE_CAPACITY = 10000
DEFAULT_CACHE_TTL_SECONDS = 24 * 60 * 60
DEFAULT_CACHE_SHARDS = 16
DEFAULT_OBTAIN_TIMEOUT_SECONDS = 10.0
DEFAULT_TRANSPORT_TIMEOUT_SECONDS = 10.0
DEFAULT_WRITE_RETRIES = 3
DEFAULT_WRITE_BACKOFF_SECONDS = 0.2
DEFAULT_MAX_PENDING_WRITES = 64
DEFAULT_METRICS_PORT = 9090

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}
_DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
_LOG_LEVELS = {"debug", "info", "warn", "warning", "error"}
_LOG_FORMATS = {"console", "json"}
_PARSE_MODES = {"html": "HTML", "markdown": "Markdown", "markdownv2": "MarkdownV2", "none": None}

# env var suffix -> (section, key)
_ENV_KEYS = {
    "DEFAULT_LANGUAGE": ("bot", "default_language"),
    "DELETE_MESSAGES": ("bot", "delete_messages"),
    "PARSE_MODE": ("bot", "parse_mode"),
    "NO_PREVIEW": ("bot", "no_preview"),
    "PRIVACY_MODE": ("bot", "privacy_mode"),
    "OBTAIN_TIMEOUT": ("bot", "obtain_timeout"),
    "CACHE_CAPACITY": ("cache", "capacity"),
    "CACHE_TTL": ("cache", "ttl"),
    "CACHE_SHARDS": ("cache", "shards"),
    "DB_PATH": ("storage", "db_path"),
    "WRITE_RETRIES": ("storage", "write_retries"),
    "LOG_ENABLE": ("log", "enabled"),
    "LOG_UPDATES": ("log", "log_updates"),
    "LOG_LEVEL": ("log", "level"),
    "LOG_FORMAT": ("log", "format"),
    "METRICS_ENABLE": ("metrics", "enabled"),
    "METRICS_PORT": ("metrics", "port"),
    "METRICS_NAMESPACE": ("metrics", "namespace"),
}


class ConfigError(ValueError):
    """Raised when configuration is invalid."""


class OptionalBool(str, Enum):
    """Tri-state flag: unset is distinct from an explicit false."""

    UNSET = "unset"
    TRUE = "true"
    FALSE = "false"

    @classmethod
    def parse(cls, value: Any, *, name: str = "flag") -> OptionalBool:
        if value is None or value == "":
            return cls.UNSET
        if isinstance(value, bool):
            return cls.TRUE if value else cls.FALSE
        text = str(value).strip().lower()
        if text in _TRUE_VALUES:
            return cls.TRUE
        if text in _FALSE_VALUES:
            return cls.FALSE
        raise ConfigError(f"{name} must be a boolean, got {value!r}")

    def resolve(self, default: bool) -> bool:
        if self is OptionalBool.UNSET:
            return default
        return self is OptionalBool.TRUE


class PrivacyMode(str, Enum):
    NO = "no"
    LOW = "low"
    STRICT = "strict"


@dataclass(frozen=True)
class BotConfig:
    token: str | None
    default_language: str
    delete_messages: bool
    parse_mode: str | None
    no_preview: bool
    privacy_mode: PrivacyMode
    obtain_timeout: float
    transport_timeout: float


@dataclass(frozen=True)
class CacheConfig:
    capacity: int
    ttl_seconds: float
    shards: int


@dataclass(frozen=True)
class StorageConfig:
    db_path: Path
    write_retries: int
    write_backoff: float
    max_pending_writes: int


@dataclass(frozen=True)
class LogConfig:
    enabled: bool
    log_updates: bool
    level: str
    format: str


@dataclass(frozen=True)
class MetricsConfig:
    enabled: bool
    port: int
    namespace: str


@dataclass(frozen=True)
class Settings:
    bot: BotConfig
    cache: CacheConfig
    storage: StorageConfig
    log: LogConfig
    metrics: MetricsConfig


def read_secret(path: Path) -> str | None:
    """Read a secret file; return None if missing or empty."""
    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    return raw if raw else None


def parse_duration(value: Any, *, name: str = "duration") -> float:
    """Seconds as a number, or a string such as '30s', '15m', '24h'."""
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a duration, got {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip().lower()
        unit = next((u for u in sorted(_DURATION_UNITS, key=len, reverse=True) if text.endswith(u)), "")
        number = text[: len(text) - len(unit)] if unit else text
        try:
            seconds = float(number) * _DURATION_UNITS.get(unit, 1)
        except ValueError as exc:
            raise ConfigError(f"{name} must be a duration, got {value!r}") from exc
    if seconds <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")
    return seconds


def _positive_int(value: Any, *, name: str, minimum: int = 1) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {number}")
    return number


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    section = raw.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return dict(section)


def _apply_env(sections: dict[str, dict[str, Any]], env: Mapping[str, str]) -> None:
    for suffix, (section, key) in _ENV_KEYS.items():
        value = env.get(ENV_PREFIX + suffix)
        if value is not None and value != "":
            sections[section][key] = value


def load_settings(path: Path | None = None, *, env: Mapping[str, str] | None = None) -> Settings:
    """Load settings from an optional YAML file, then apply environment overrides."""
    if env is None:
        env = os.environ
    raw: dict[str, Any] = {}
    base_dir = Path.cwd()
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config not found: {path}")
        with path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")
        raw = loaded
        base_dir = path.resolve().parent

    sections = {name: _section(raw, name) for name in ("bot", "cache", "storage", "log", "metrics")}
    _apply_env(sections, env)
    bot, cache, storage, log, metrics = (sections[n] for n in ("bot", "cache", "storage", "log", "metrics"))

    token = env.get(ENV_PREFIX + "TOKEN") or None
    if token is None and bot.get("token_file"):
        token_path = Path(str(bot["token_file"])).expanduser()
        if not token_path.is_absolute():
            token_path = base_dir / token_path
        token = read_secret(token_path)

    parse_mode_raw = str(bot.get("parse_mode", "HTML")).strip().lower()
    if parse_mode_raw not in _PARSE_MODES:
        raise ConfigError(f"parse_mode must be one of HTML, Markdown, MarkdownV2, none: {parse_mode_raw!r}")

    try:
        privacy_mode = PrivacyMode(str(bot.get("privacy_mode", PrivacyMode.NO.value)).strip().lower())
    except ValueError as exc:
        raise ConfigError(f"privacy_mode must be one of no, low, strict: {bot.get('privacy_mode')!r}") from exc

    language = str(bot.get("default_language", DEFAULT_LANGUAGE)).strip().lower() or DEFAULT_LANGUAGE
    if len(language) > 3:
        raise ConfigError(f"default_language must be an ISO 639 code: {language!r}")

    level = str(log.get("level", "info")).strip().lower()
    if level not in _LOG_LEVELS:
        raise ConfigError(f"log level must be one of debug, info, warn, error: {level!r}")
    log_format = str(log.get("format", "console")).strip().lower()
    if log_format not in _LOG_FORMATS:
        raise ConfigError(f"log format must be console or json: {log_format!r}")

    db_path = Path(str(storage.get("db_path", Path.home() / "chatstate" / "chatstate.db"))).expanduser()
    if not db_path.is_absolute():
        db_path = base_dir / db_path

    return Settings(
        bot=BotConfig(
            token=token,
            default_language=language,
            delete_messages=OptionalBool.parse(bot.get("delete_messages"), name="delete_messages").resolve(True),
            parse_mode=_PARSE_MODES[parse_mode_raw],
            no_preview=OptionalBool.parse(bot.get("no_preview"), name="no_preview").resolve(False),
            privacy_mode=privacy_mode,
            obtain_timeout=parse_duration(
                bot.get("obtain_timeout", DEFAULT_OBTAIN_TIMEOUT_SECONDS), name="obtain_timeout"
            ),
            transport_timeout=parse_duration(
                bot.get("transport_timeout", DEFAULT_TRANSPORT_TIMEOUT_SECONDS), name="transport_timeout"
            ),
        ),
        cache=CacheConfig(
            capacity=_positive_int(cache.get("capacity", DEFAULT_CACHE_CAPACITY), name="cache capacity"),
            ttl_seconds=parse_duration(cache.get("ttl", DEFAULT_CACHE_TTL_SECONDS), name="cache ttl"),
            shards=_positive_int(cache.get("shards", DEFAULT_CACHE_SHARDS), name="cache shards"),
        ),
        storage=StorageConfig(
            db_path=db_path,
            write_retries=_positive_int(
                storage.get("write_retries", DEFAULT_WRITE_RETRIES), name="write_retries", minimum=0
            ),
            write_backoff=parse_duration(
                storage.get("write_backoff", DEFAULT_WRITE_BACKOFF_SECONDS), name="write_backoff"
            ),
            max_pending_writes=_positive_int(
                storage.get("max_pending_writes", DEFAULT_MAX_PENDING_WRITES), name="max_pending_writes", minimum=2
            ),
        ),
        log=LogConfig(
            enabled=OptionalBool.parse(log.get("enabled"), name="log enabled").resolve(True),
            log_updates=OptionalBool.parse(log.get("log_updates"), name="log_updates").resolve(True),
            level="warning" if level == "warn" else level,
            format=log_format,
        ),
        metrics=MetricsConfig(
            enabled=OptionalBool.parse(metrics.get("enabled"), name="metrics enabled").resolve(False),
            port=_positive_int(metrics.get("port", DEFAULT_METRICS_PORT), name="metrics port"),
            namespace=str(metrics.get("namespace", "")).strip(),
        ),
    )
