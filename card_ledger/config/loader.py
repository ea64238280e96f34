"""
Configuration management and loading.

Handles application settings from a YAML file and environment variables.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from card_ledger.core.money import MAX_AMOUNT
from card_ledger.exceptions import ConfigurationError

CODEC_KEY_ENV = "CARD_LEDGER_CODEC_KEY"
CONFIG_PATH_ENV = "CARD_LEDGER_CONFIG"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
LOG_FORMATS = ("standard", "json")


@dataclass(frozen=True)
class DatabaseConfig:
    """SQLite location and write-contention policy."""
    path: str = "card_ledger.db"
    busy_timeout_seconds: float = 5.0
    max_conflict_retries: int = 3

    def __post_init__(self):
        if not self.path:
            raise ConfigurationError("database.path cannot be empty")
        if self.busy_timeout_seconds <= 0:
            raise ConfigurationError("database.busy_timeout_seconds must be > 0")
        if self.max_conflict_retries < 1:
            raise ConfigurationError("database.max_conflict_retries must be >= 1")


@dataclass(frozen=True)
class CodecConfig:
    """Key material for the card number codec (base64)."""
    key: str = field(repr=False)

    def __post_init__(self):
        if not self.key or not self.key.strip():
            raise ConfigurationError(
                f"codec.key is required (set it in the config file or {CODEC_KEY_ENV})"
            )


@dataclass(frozen=True)
class AuthorizationConfig:
    """Velocity check settings."""
    velocity_window_seconds: float = 5.0

    def __post_init__(self):
        if self.velocity_window_seconds < 0:
            raise ConfigurationError("authorization.velocity_window_seconds cannot be negative")


@dataclass(frozen=True)
class FeeScheduleConfig:
    """Background fee update schedule."""
    update_interval_seconds: float = 3600.0
    readiness_poll_seconds: float = 5.0
    seed_if_empty: bool = False

    def __post_init__(self):
        if self.update_interval_seconds <= 0:
            raise ConfigurationError("fees.update_interval_seconds must be > 0")
        if self.readiness_poll_seconds <= 0:
            raise ConfigurationError("fees.readiness_poll_seconds must be > 0")


@dataclass(frozen=True)
class CardIssuanceConfig:
    """Card creation settings."""
    max_initial_balance: Decimal = Decimal("2147483647.00")

    def __post_init__(self):
        if self.max_initial_balance < 0:
            raise ConfigurationError("cards.max_initial_balance cannot be negative")
        if self.max_initial_balance > MAX_AMOUNT:
            raise ConfigurationError(f"cards.max_initial_balance cannot exceed {MAX_AMOUNT}")


@dataclass(frozen=True)
class LoggingConfig:
    """Log level and output format."""
    level: str = "INFO"
    format: str = "standard"

    def __post_init__(self):
        if self.level.upper() not in LOG_LEVELS:
            raise ConfigurationError(f"logging.level must be one of: {list(LOG_LEVELS)}")
        if self.format not in LOG_FORMATS:
            raise ConfigurationError(f"logging.format must be one of: {list(LOG_FORMATS)}")


@dataclass(frozen=True)
class LedgerConfig:
    """Complete card ledger configuration."""
    codec: CodecConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    authorization: AuthorizationConfig = field(default_factory=AuthorizationConfig)
    fees: FeeScheduleConfig = field(default_factory=FeeScheduleConfig)
    cards: CardIssuanceConfig = field(default_factory=CardIssuanceConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


_SECTION_KEYS = {
    "database": {"path", "busy_timeout_seconds", "max_conflict_retries"},
    "codec": {"key"},
    "authorization": {"velocity_window_seconds"},
    "fees": {"update_interval_seconds", "readiness_poll_seconds", "seed_if_empty"},
    "cards": {"max_initial_balance"},
    "logging": {"level", "format"},
}


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> LedgerConfig:
    """Load and validate the ledger configuration.

    The file is optional; without one every setting takes its default and
    the codec key must come from the environment. A key in the
    environment always overrides the file, so the secret can stay out of
    version control.

    Args:
        path: Path to YAML configuration file, or None
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If a config path is given but doesn't exist
        ConfigurationError: If YAML or configuration values are invalid
    """
    env = os.environ if environ is None else environ
    raw_config: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in config file {path}: {e}")

        if not isinstance(raw_config, dict):
            raise ConfigurationError("Configuration file must contain a mapping")

    unknown_keys = set(raw_config.keys()) - set(_SECTION_KEYS)
    if unknown_keys:
        raise ConfigurationError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _SECTION_KEYS}

    codec_key = env.get(CODEC_KEY_ENV) or sections["codec"].get("key") or ""

    return LedgerConfig(
        codec=CodecConfig(key=str(codec_key)),
        database=DatabaseConfig(
            path=str(sections["database"].get("path", DatabaseConfig.path)),
            busy_timeout_seconds=_number(sections["database"], "database", "busy_timeout_seconds", DatabaseConfig.busy_timeout_seconds),
            max_conflict_retries=_integer(sections["database"], "database", "max_conflict_retries", DatabaseConfig.max_conflict_retries),
        ),
        authorization=AuthorizationConfig(
            velocity_window_seconds=_number(sections["authorization"], "authorization", "velocity_window_seconds", AuthorizationConfig.velocity_window_seconds),
        ),
        fees=FeeScheduleConfig(
            update_interval_seconds=_number(sections["fees"], "fees", "update_interval_seconds", FeeScheduleConfig.update_interval_seconds),
            readiness_poll_seconds=_number(sections["fees"], "fees", "readiness_poll_seconds", FeeScheduleConfig.readiness_poll_seconds),
            seed_if_empty=_flag(sections["fees"], "fees", "seed_if_empty", FeeScheduleConfig.seed_if_empty),
        ),
        cards=CardIssuanceConfig(
            max_initial_balance=Decimal(str(_number(sections["cards"], "cards", "max_initial_balance", CardIssuanceConfig.max_initial_balance))),
        ),
        logging=LoggingConfig(
            level=str(sections["logging"].get("level", LoggingConfig.level)).upper(),
            format=str(sections["logging"].get("format", LoggingConfig.format)),
        ),
    )


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return a validated config section, or {} when absent."""
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - _SECTION_KEYS[name]
    if unknown_keys:
        raise ConfigurationError(f"Unknown keys in {name}: {unknown_keys}")
    return data


def _number(data: Dict[str, Any], section: str, key: str, default: Any) -> Any:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ConfigurationError(f"'{key}' in {section} must be a number")
    return value


def _integer(data: Dict[str, Any], section: str, key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"'{key}' in {section} must be a whole number")
    return value


def _flag(data: Dict[str, Any], section: str, key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigurationError(f"'{key}' in {section} must be true or false")
    return value
