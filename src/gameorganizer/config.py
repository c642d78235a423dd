"""Configuration management for gameorganizer.

Loads configuration from environment variables and provides defaults.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from rich.logging import RichHandler

# Load .env file if present
load_dotenv()


@dataclass
class Config:
    """Application configuration."""

    # Database
    db_path: Path

    # Logging
    log_level: str

    # Default caller email for the CLI
    caller_email: Optional[str]

    # Overdue sweep
    sweep_interval: int  # seconds

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        db_path_str = os.environ.get(
            "GAMEORGANIZER_DB_PATH",
            str(Path.home() / ".gameorganizer" / "gameorganizer.db"),
        )
        db_path = Path(db_path_str).expanduser()

        return cls(
            db_path=db_path,
            log_level=os.environ.get("GAMEORGANIZER_LOG_LEVEL", "WARNING").upper(),
            caller_email=os.environ.get("GAMEORGANIZER_CALLER") or None,
            sweep_interval=int(os.environ.get("GAMEORGANIZER_SWEEP_INTERVAL", "600")),
        )

    def validate(self) -> list[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.log_level not in logging.getLevelNamesMapping():
            errors.append(f"Unknown log level: {self.log_level}")

        if self.sweep_interval <= 0:
            errors.append("Sweep interval must be a positive number of seconds")

        # Check database directory is writable
        if not self.db_path.parent.exists():
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                errors.append(f"Cannot create database directory: {self.db_path.parent}")

        return errors


def setup_logging(level: str = "WARNING") -> logging.Logger:
    """Configure the package logger.

    Args:
        level: Log level name. Defaults to WARNING so normal use is quiet.

    Returns:
        The ``gameorganizer`` logger
    """
    numeric = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger("gameorganizer")
    if not logger.handlers:
        handler = RichHandler(show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(numeric)
    return logger


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reset_config() -> None:
    """Reset the global config instance. Used for testing."""
    global _config
    _config = None
