# src/aiwg_workspace/logging_setup.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional


def resolve_log_file(settings) -> Path:
    """A relative log file lives inside the workspace root."""
    log_file = Path(settings.logging.log_file)
    if log_file.is_absolute():
        return log_file
    return Path(settings.workspace.root) / log_file


def setup_logging(settings, verbose: bool = False) -> Optional[Path]:
    """
    Configures the root logger from `settings.logging`.

    Console output goes to stderr; stdout is reserved for command output.
    Returns the log file path when file logging is enabled.
    """
    try:
        log_settings = settings.logging
    except AttributeError:
        logging.basicConfig(level=logging.INFO, stream=sys.stderr)
        logging.getLogger(__name__).warning(
            "'logging' section not in config. Using basic logging."
        )
        return None

    level = "DEBUG" if verbose else log_settings.level.upper()
    root = logging.getLogger()
    root.setLevel(level)

    if root.hasHandlers():
        root.handlers.clear()

    formatter = logging.Formatter(log_settings.format)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    log_path = None
    if log_settings.log_to_file:
        log_path = resolve_log_file(settings)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        rotating = RotatingFileHandler(
            log_path,
            maxBytes=log_settings.rotation_size_mb * 1024 * 1024,
            backupCount=log_settings.rotation_backup_count,
        )
        rotating.setLevel(level)
        rotating.setFormatter(formatter)
        root.addHandler(rotating)

    root.debug(f"Logging configured at {level}")
    return log_path
