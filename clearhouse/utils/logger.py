"""
Centralized logging configuration for Clearhouse.

Provides structured logging with color output and separate loggers
for the settlement subsystems (auction, maturity, scheduler, storage, ledger).
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import colorlog


class ClearhouseLogger:
    """Centralized logger for Clearhouse components"""

    _initialized = False

    @classmethod
    def setup(
        cls,
        level: int = logging.INFO,
        log_dir: Optional[str] = None,
        log_to_file: bool = True,
    ):
        """
        Setup logging configuration.

        Args:
            level: Logging level (DEBUG, INFO, WARNING, ERROR)
            log_dir: Directory for log files. If None, uses ./logs
            log_to_file: Whether to write logs to file
        """
        if cls._initialized:
            return

        target = None
        if log_to_file:
            target = Path(log_dir) if log_dir else Path("logs")
            target.mkdir(exist_ok=True, parents=True)

        root_logger = logging.getLogger("clearhouse")
        root_logger.setLevel(level)
        root_logger.handlers.clear()

        # Console handler with colors
        console_handler = colorlog.StreamHandler(sys.stdout)
        console_handler.setLevel(level)
        console_formatter = colorlog.ColoredFormatter(
            "%(log_color)s%(asctime)s [%(name)s] %(levelname)-8s%(reset)s %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

        if target is not None:
            file_handler = logging.FileHandler(target / "clearhouse.log")
            file_handler.setLevel(level)
            file_formatter = logging.Formatter(
                "%(asctime)s [%(name)s] %(levelname)-8s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
            file_handler.setFormatter(file_formatter)
            root_logger.addHandler(file_handler)

        cls._initialized = True

    @classmethod
    def get_logger(cls, name: str) -> logging.Logger:
        """
        Get a logger for a specific subsystem.

        Loggers are plain children of the ``clearhouse`` namespace, so
        records propagate (and pytest's caplog sees them) even before
        setup() has been called.

        Args:
            name: Subsystem name (e.g., 'auction.settlement', 'scheduler')

        Returns:
            Logger instance
        """
        return logging.getLogger(f"clearhouse.{name}")


# Convenience functions
def get_logger(name: str) -> logging.Logger:
    """Get a logger for a specific subsystem"""
    return ClearhouseLogger.get_logger(name)


def setup_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    log_to_file: bool = True,
):
    """Setup logging configuration"""
    ClearhouseLogger.setup(level=level, log_dir=log_dir, log_to_file=log_to_file)
