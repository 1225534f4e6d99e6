"""Unified logging and debug infrastructure for boxmatrix.

This module provides:
1. Centralized logging configuration
2. Debug mode via BOXMATRIX_DEBUG env var or programmatic flag
3. Log levels via BOXMATRIX_LOG_LEVEL env var
4. Dual output: Rich console for CLI, file logging for debugging
5. Daemon mode: stderr-only for CI and background runs

Usage:
    from boxmatrix.utils.logging import get_logger, configure_logging

    # In CLI entry point:
    configure_logging(debug=args.debug)

    # In any module:
    logger = get_logger(__name__)
    logger.info("Starting run")
    logger.debug("Detailed debug info")
    logger.error("Leaf failed", exc=exception)

Environment Variables:
    BOXMATRIX_DEBUG=1          Enable debug mode (verbose output)
    BOXMATRIX_LOG_LEVEL=DEBUG  Set log level (DEBUG, INFO, WARNING, ERROR)
    BOXMATRIX_LOG_FILE=/path   Override log file location
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console

from boxmatrix.paths import HostPaths

# Global state
_configured = False
_debug_mode = False
_daemon_mode = False
_log_file: Optional[Path] = None

# Shared Rich console instance
console = Console()

# Custom log level for success messages
SUCCESS_LEVEL = 25
logging.addLevelName(SUCCESS_LEVEL, "SUCCESS")


def _get_log_file() -> Path:
    """Get the log file path, creating its directory if needed."""
    global _log_file
    if _log_file:
        return _log_file

    env_log_file = os.environ.get("BOXMATRIX_LOG_FILE")
    if env_log_file:
        _log_file = Path(env_log_file)
    else:
        _log_file = HostPaths.log_dir() / "boxmatrix.log"

    _log_file.parent.mkdir(parents=True, exist_ok=True)
    return _log_file


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode or os.environ.get("BOXMATRIX_DEBUG", "").lower() in ("1", "true", "yes")


def configure_logging(
    debug: bool = False,
    daemon: bool = False,
    log_level: Optional[str] = None,
    log_file: Optional[Path] = None,
) -> None:
    """Configure the logging system.

    Should be called once at startup. Later calls are ignored.

    Args:
        debug: Enable debug mode (verbose output, debug to console)
        daemon: Daemon mode (stderr only, no Rich formatting)
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_file: Override log file path
    """
    global _configured, _debug_mode, _daemon_mode, _log_file

    if _configured:
        return

    _debug_mode = debug or is_debug_mode()
    _daemon_mode = daemon

    if log_file:
        _log_file = log_file

    if log_level:
        level_name = log_level.upper()
    else:
        level_name = os.environ.get(
            "BOXMATRIX_LOG_LEVEL", "DEBUG" if _debug_mode else "INFO"
        ).upper()

    level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger("boxmatrix")
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    # File handler with rotation (captures everything)
    try:
        file_handler = RotatingFileHandler(
            _get_log_file(),
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(threadName)s | %(name)s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        root_logger.addHandler(file_handler)
    except OSError:
        # Can't write log file, continue without it
        pass

    if _daemon_mode:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(level)
        stderr_handler.setFormatter(logging.Formatter("%(name)s: %(levelname)s: %(message)s"))
        root_logger.addHandler(stderr_handler)

    _configured = True

    root_logger.debug(
        f"Logging configured: level={level_name}, debug={_debug_mode}, daemon={_daemon_mode}"
    )
    if _log_file:
        root_logger.debug(f"Log file: {_log_file}")


class BoxmatrixLogger:
    """Logging with Rich console output.

    Provides:
    - Standard log levels (debug, info, warning, error)
    - Success level for green checkmark messages
    - File logging for post-mortem of failed runs
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)
        self.console = console

    def debug(self, message: str, console_output: bool = False) -> None:
        """Log debug message.

        Debug only goes to the log file unless console_output is set or
        BOXMATRIX_DEBUG is enabled.
        """
        self.logger.debug(message)
        if console_output or is_debug_mode():
            if _daemon_mode:
                print(f"DEBUG: {message}", file=sys.stderr)
            else:
                self.console.print(f"[dim][DEBUG] {message}[/dim]")

    def info(self, message: str, console_output: bool = True) -> None:
        self.logger.info(message)
        if console_output and not _daemon_mode:
            self.console.print(f"[blue]{message}[/blue]")
        elif console_output and _daemon_mode:
            print(f"INFO: {message}", file=sys.stderr)

    def success(self, message: str, console_output: bool = True) -> None:
        """Log success message (green output)."""
        self.logger.log(SUCCESS_LEVEL, message)
        if console_output and not _daemon_mode:
            self.console.print(f"[green]✓ {message}[/green]")
        elif console_output and _daemon_mode:
            print(f"SUCCESS: {message}", file=sys.stderr)

    def warning(self, message: str, console_output: bool = True) -> None:
        """Log warning message (yellow output)."""
        self.logger.warning(message)
        if console_output and not _daemon_mode:
            self.console.print(f"[yellow]⚠ {message}[/yellow]")
        elif console_output and _daemon_mode:
            print(f"WARNING: {message}", file=sys.stderr)

    def error(
        self,
        message: str,
        exc: Optional[BaseException] = None,
        console_output: bool = True,
    ) -> None:
        """Log error message (red output).

        Args:
            message: Error message
            exc: Optional exception to include in log
            console_output: Output to console
        """
        if exc:
            self.logger.error(f"{message}: {exc}", exc_info=exc)
            error_msg = f"{message}: {exc}"
        else:
            self.logger.error(message)
            error_msg = message

        if console_output and not _daemon_mode:
            self.console.print(f"[red]✗ {error_msg}[/red]")
        elif console_output and _daemon_mode:
            print(f"ERROR: {error_msg}", file=sys.stderr)

    def print(self, message: str, style: Optional[str] = None) -> None:
        """Print to console without logging."""
        if _daemon_mode:
            print(message, file=sys.stderr)
        elif style:
            self.console.print(f"[{style}]{message}[/{style}]")
        else:
            self.console.print(message)


def get_logger(name: str) -> BoxmatrixLogger:
    """Get or create a logger for a module.

    Args:
        name: Module name (typically __name__)

    Returns:
        BoxmatrixLogger instance
    """
    if not _configured:
        configure_logging()

    if not name.startswith("boxmatrix"):
        name = f"boxmatrix.{name}"

    return BoxmatrixLogger(name)


def log_startup_info() -> None:
    """Log startup diagnostic information (call from main entry points)."""
    logger = get_logger("boxmatrix.startup")
    logger.debug(f"Python: {sys.version}")
    logger.debug(f"Platform: {sys.platform}")
    logger.debug(f"CWD: {os.getcwd()}")
    logger.debug(f"Debug mode: {is_debug_mode()}")
    logger.debug(f"Log file: {_get_log_file()}")

    for var in [
        "BOXMATRIX_DEBUG",
        "BOXMATRIX_LOG_LEVEL",
        "BOXMATRIX_REGISTRY_MIRROR_DIR",
        "BOXMATRIX_PARALLEL",
        "BOXMATRIX_SHORT",
    ]:
        value = os.environ.get(var)
        if value:
            logger.debug(f"ENV {var}={value}")
