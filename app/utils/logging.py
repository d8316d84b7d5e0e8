"""Logging setup shared by the API, the agent loop and the CLI."""

import logging
import os
import sys

from pydantic import BaseModel, Field

# SDK and server loggers that are chatty at INFO
QUIET_LOGGERS = ("anthropic", "openai", "httpx", "googleapiclient.discovery_cache", "uvicorn.access")


class LogConfig(BaseModel):
    """Log level, line format and third-party loggers to quiet down."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    quiet_loggers: tuple[str, ...] = Field(default=QUIET_LOGGERS)

    @classmethod
    def from_env(cls) -> "LogConfig":
        """Read LOG_LEVEL and LOG_FORMAT."""
        config = cls(level=os.getenv("LOG_LEVEL", "INFO"))
        if log_format := os.getenv("LOG_FORMAT"):
            config.format = log_format
        return config


def setup_logging(config: LogConfig | None = None) -> None:
    """Configure the root logger on stdout."""
    config = config or LogConfig.from_env()

    logging.basicConfig(
        level=config.level.upper(),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    for name in config.quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a module logger.

    Args:
        name: Module name (typically __name__)
        level: Explicit level, overrides LOG_LEVEL

    Returns:
        Logger at the requested level
    """
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
