"""Configuration loading from TOML files with environment variable fallbacks."""

import os
from dataclasses import dataclass
from pathlib import Path

import tomli

DEFAULT_CONFIG_PATHS = [
    Path("config.toml"),
    Path.home() / ".config" / "fintrack" / "config.toml",
]

DEFAULT_DB_PATH = "fintrack.db"
DEFAULT_NOTE_DELIMITER = " | "
DEFAULT_PARSER_URL = "http://localhost:8787"
DEFAULT_PARSER_TIMEOUT = 30.0
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class DatabaseConfig:
    """Database configuration."""

    path: Path


@dataclass(frozen=True)
class RulesConfig:
    """Automation rule configuration."""

    note_delimiter: str = DEFAULT_NOTE_DELIMITER


@dataclass(frozen=True)
class DuplicatesConfig:
    """Duplicate detection configuration."""

    window_days: int = 0


@dataclass(frozen=True)
class ParserConfig:
    """Parse worker configuration."""

    url: str = DEFAULT_PARSER_URL
    api_key: str | None = None
    timeout: float = DEFAULT_PARSER_TIMEOUT


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str = DEFAULT_LOG_LEVEL


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    database: DatabaseConfig
    rules: RulesConfig
    duplicates: DuplicatesConfig
    parser: ParserConfig
    logging: LoggingConfig


def find_config_file() -> Path | None:
    """Find the first existing config file from default paths."""
    for path in DEFAULT_CONFIG_PATHS:
        if path.exists():
            return path
    return None


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from TOML file with environment variable fallbacks."""
    path = config_path or find_config_file()
    toml_data = _load_toml_data(path)
    return _build_config(toml_data, path)


def _load_toml_data(config_path: Path | None) -> dict:
    """Load TOML data from file if it exists."""
    if config_path and config_path.exists():
        with open(config_path, "rb") as f:
            return tomli.load(f)
    return {}


def _build_config(toml_data: dict, config_path: Path | None) -> Config:
    """Build Config object from TOML data and environment variables."""
    return Config(
        database=_build_database_config(toml_data.get("database", {}), config_path),
        rules=_build_rules_config(toml_data.get("rules", {})),
        duplicates=_build_duplicates_config(toml_data.get("duplicates", {})),
        parser=_build_parser_config(toml_data.get("parser", {})),
        logging=_build_logging_config(toml_data.get("logging", {})),
    )


def _build_database_config(db_data: dict, config_path: Path | None) -> DatabaseConfig:
    """Build database config, resolving relative paths against config file location."""
    db_path_str = os.environ.get("FINTRACK_DB_PATH", db_data.get("path", DEFAULT_DB_PATH))
    db_path = Path(db_path_str)
    if not db_path.is_absolute() and config_path:
        db_path = config_path.parent / db_path
    return DatabaseConfig(path=db_path)


def _build_rules_config(rules_data: dict) -> RulesConfig:
    """Build rules config from TOML data and env vars."""
    delimiter = os.environ.get(
        "FINTRACK_NOTE_DELIMITER", rules_data.get("note_delimiter", DEFAULT_NOTE_DELIMITER)
    )
    return RulesConfig(note_delimiter=delimiter)


def _build_duplicates_config(dup_data: dict) -> DuplicatesConfig:
    """Build duplicate detection config from TOML data and env vars."""
    window_days = int(
        os.environ.get("FINTRACK_DUPLICATE_WINDOW_DAYS", dup_data.get("window_days", 0))
    )
    if window_days < 0:
        raise ValueError(f"duplicates.window_days must be >= 0, got {window_days}")
    return DuplicatesConfig(window_days=window_days)


def _build_parser_config(parser_data: dict) -> ParserConfig:
    """Build parse worker config from TOML data and env vars."""
    url = os.environ.get("FINTRACK_PARSER_URL", parser_data.get("url", DEFAULT_PARSER_URL))
    api_key = os.environ.get("FINTRACK_PARSER_API_KEY", parser_data.get("api_key")) or None
    timeout = float(
        os.environ.get("FINTRACK_PARSER_TIMEOUT", parser_data.get("timeout", DEFAULT_PARSER_TIMEOUT))
    )
    return ParserConfig(url=url, api_key=api_key, timeout=timeout)


def _build_logging_config(logging_data: dict) -> LoggingConfig:
    """Build logging config from TOML data and env vars."""
    level = os.environ.get("FINTRACK_LOG_LEVEL", logging_data.get("level", DEFAULT_LOG_LEVEL))
    return LoggingConfig(level=level.upper())
