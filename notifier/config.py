"""
Notifier configuration management.

Handles loading, saving, and validating the notifier configuration:
timezone, database location, worker pool, notification sender, logging
and delivery history settings.
"""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, List

from dotenv import load_dotenv

from notifier.errors import InvalidTime
from notifier.timerules import resolve_timezone

# Load .env file from the working directory, if any
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/Santiago"


def get_data_dir() -> Path:
    """Get the data directory for notifier files."""
    data_dir = os.environ.get('NOTIFIER_DATA_DIR')
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".task_notifier"


def _get_default_log_file() -> str:
    """Get default log file path from environment or default."""
    if os.environ.get('NOTIFIER_LOG_DIR'):
        return str(Path(os.environ['NOTIFIER_LOG_DIR']).expanduser() / "notifier.log")
    return str(get_data_dir() / "logs" / "notifier.log")


def default_history_file() -> str:
    if os.environ.get('NOTIFIER_HISTORY_FILE'):
        return os.environ['NOTIFIER_HISTORY_FILE']
    return str(get_data_dir() / "delivery_history.json")


def _get_default_database_url() -> str:
    if os.environ.get('NOTIFIER_DATABASE_URL'):
        return os.environ['NOTIFIER_DATABASE_URL']
    return f"sqlite:///{get_data_dir() / 'notifier.db'}"


@dataclass
class SenderConfig:
    """Notification sender configuration."""
    type: str = "log"  # 'log' or 'command'
    command: Optional[str] = None  # Shell command that receives the digest on stdin
    timeout: int = 60  # Command timeout in seconds


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: str = None  # Set dynamically in __post_init__

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


@dataclass
class HistoryConfig:
    """Delivery history configuration."""
    file: str = None  # Set dynamically in __post_init__
    max_entries: int = 1000

    def __post_init__(self):
        if self.file is None:
            self.file = default_history_file()


@dataclass
class NotifierConfig:
    """
    Notifier configuration.

    Loaded from a JSON file, with environment overrides for the values
    deployments usually change.

    Configuration path priority:
    1. Explicit config_path argument
    2. NOTIFIER_CONFIG_PATH environment variable
    3. Default: ~/.task_notifier/notifier_config.json
    """
    timezone: str = DEFAULT_TIMEZONE
    database_url: str = None  # Set dynamically in __post_init__
    max_workers: int = 5
    misfire_grace_time: int = 300  # Seconds a late fire is still allowed to run
    sync_interval_seconds: int = 60  # How often the daemon re-reads durable jobs
    sender: SenderConfig = field(default_factory=SenderConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    config_path: Optional[Path] = field(default=None, compare=False)

    def __post_init__(self):
        if self.database_url is None:
            self.database_url = _get_default_database_url()

    @staticmethod
    def default_config_path() -> Path:
        if os.environ.get('NOTIFIER_CONFIG_PATH'):
            return Path(os.environ['NOTIFIER_CONFIG_PATH']).expanduser()
        return get_data_dir() / "notifier_config.json"

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> 'NotifierConfig':
        """
        Load configuration from JSON file, falling back to defaults.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.

        Returns:
            NotifierConfig with environment overrides applied
        """
        path = Path(config_path).expanduser() if config_path else cls.default_config_path()

        if path.exists():
            try:
                with open(path, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.error(f"Failed to load config from {path}: {e}")
                raise

            config = cls(
                timezone=data.get('timezone', DEFAULT_TIMEZONE),
                database_url=data.get('database_url'),
                max_workers=data.get('max_workers', 5),
                misfire_grace_time=data.get('misfire_grace_time', 300),
                sync_interval_seconds=data.get('sync_interval_seconds', 60),
                sender=SenderConfig(**data.get('sender', {})),
                logging=LoggingConfig(**data.get('logging', {})),
                history=HistoryConfig(**data.get('history', {})),
            )
            logger.info(f"Loaded configuration from {path}")
        else:
            logger.info(f"No config found at {path}, using defaults")
            config = cls()

        config.config_path = path
        config._apply_env_overrides()
        return config

    def _apply_env_overrides(self):
        if os.environ.get('NOTIFIER_TIMEZONE'):
            self.timezone = os.environ['NOTIFIER_TIMEZONE']
        if os.environ.get('NOTIFIER_DATABASE_URL'):
            self.database_url = os.environ['NOTIFIER_DATABASE_URL']
        if os.environ.get('NOTIFIER_SEND_COMMAND'):
            self.sender.type = 'command'
            self.sender.command = os.environ['NOTIFIER_SEND_COMMAND']

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop('config_path', None)
        return data

    def save(self, config_path: Optional[str] = None):
        """Save configuration to JSON file."""
        path = Path(config_path) if config_path else (self.config_path or self.default_config_path())
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        self.config_path = path
        logger.info(f"Saved configuration to {path}")

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        try:
            resolve_timezone(self.timezone)
        except InvalidTime:
            errors.append(f"Unknown timezone '{self.timezone}'")

        if not self.database_url:
            errors.append("'database_url' cannot be empty")

        if self.max_workers <= 0:
            errors.append("'max_workers' must be positive")

        if self.misfire_grace_time <= 0:
            errors.append("'misfire_grace_time' must be positive")

        if self.sync_interval_seconds <= 0:
            errors.append("'sync_interval_seconds' must be positive")

        if self.sender.type not in ('log', 'command'):
            errors.append(f"Unknown sender type '{self.sender.type}'")
        elif self.sender.type == 'command' and not (self.sender.command or '').strip():
            errors.append("'command' sender requires 'command'")

        if self.sender.timeout <= 0:
            errors.append("Sender 'timeout' must be positive")

        if self.history.max_entries <= 0:
            errors.append("History 'max_entries' must be positive")

        return errors

    def __repr__(self):
        return f"NotifierConfig(timezone={self.timezone}, database={self.database_url}, path={self.config_path})"
