"""
Root logger setup for runbooks: colored console output plus a
timestamped DEBUG log file per run.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from colorlog import ColoredFormatter

from .config import settings

# Azure SDK, HTTP transport and SQLAlchemy loggers are chatty at INFO
NOISY_LOGGERS = ["azure", "urllib3", "msal", "sqlalchemy"]

CONSOLE_FORMAT = "%(log_color)s%(levelname)-8s%(reset)s | %(log_color)s%(message)s%(reset)s"
FILE_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LEVEL_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}


def _console_level(override: Optional[str]) -> int:
    if override:
        return getattr(logging, override.upper(), logging.INFO)
    if settings.AZOPS_ENVIRONMENT.lower() == "development":
        return logging.DEBUG
    return logging.INFO


def _log_file_path(script_name: str, log_dir: Union[str, Path]) -> Path:
    directory = Path(log_dir)
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logging.getLogger().warning(f"Log directory {log_dir} unusable ({e}), writing to '.'")
        directory = Path(".")
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return directory / f"{script_name}_{stamp}.log"


def setup_logging(
    script_name: str = "azops",
    log_dir: Union[str, Path] = "logs/",
    log_level_override: Optional[str] = None,
) -> Path:
    """
    Configure the root logger. Call once, at the top of the runbook.

    The console level is `log_level_override` when given, DEBUG in the
    development environment and INFO otherwise. The file always gets DEBUG.

    Returns:
        Path: The log file for this run.
    """
    level = _console_level(log_level_override)
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(ColoredFormatter(CONSOLE_FORMAT, log_colors=LEVEL_COLORS))
    root.addHandler(console)

    log_file = _log_file_path(script_name, log_dir)
    try:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
    except OSError as e:
        root.warning(f"No log file for this run, {log_file} could not be opened: {e}")
    else:
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(file_handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root.info(
        f"Logging to console at {logging.getLevelName(level)} and to {log_file} "
        f"({settings.AZOPS_ENVIRONMENT})"
    )
    return log_file
