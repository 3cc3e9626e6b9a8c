"""
Logger Utility
==============

Console logging for the gateway. Every component logs through its own
context so interleaved output from the agent loop, the tools and the
channel sessions stays readable:

    [2026-01-31T10:30:00] [INFO] [Agent] Loop iteration 1, sending 3 messages
    [2026-01-31T10:30:01] [WARN] [WhatsApp:personal] Disconnected: status=428

The minimum level is process-wide. It starts from the LOG_LEVEL environment
variable and can be changed later with Logger.set_level() once the config
file has been read.

Usage:
    from localclaw.utils.logger import Logger

    logger = Logger("ToolExecutor")
    logger.info("Executing tool: bash")

    session_logger = Logger("WhatsApp").child("personal")
    session_logger.debug("Event received", {"event": "connection.update"})
"""

import json
import os
import sys
from datetime import datetime
from enum import IntEnum
from typing import Any


class LogLevel(IntEnum):
    """Log levels with numeric values for comparison."""
    DEBUG = 10
    INFO = 20
    WARNING = 30
    ERROR = 40


class Colors:
    """ANSI escape codes for colored terminal output."""
    RESET = "\033[0m"
    DEBUG = "\033[36m"    # Cyan
    INFO = "\033[32m"     # Green
    WARNING = "\033[33m"  # Yellow
    ERROR = "\033[31m"    # Red
    DIM = "\033[2m"


_LEVEL_NAMES = {
    "DEBUG": LogLevel.DEBUG,
    "INFO": LogLevel.INFO,
    "WARNING": LogLevel.WARNING,
    "WARN": LogLevel.WARNING,
    "ERROR": LogLevel.ERROR,
}


def parse_level(value: str | None, default: LogLevel = LogLevel.INFO) -> LogLevel:
    """
    Parse a level name such as "debug" or "WARN".

    Args:
        value: The level name (case-insensitive)
        default: Returned when the value is empty or unknown

    Returns:
        The matching LogLevel
    """
    if not value:
        return default
    return _LEVEL_NAMES.get(value.strip().upper(), default)


class Logger:
    """
    A context-aware logger with colored output.

    Example:
        logger = Logger("Channels")
        logger.info("Channel registered: whatsapp (personal)")

        child = logger.child("personal")
        child.warning("Reconnecting in 4s")
    """

    # Shared across all instances so one call reconfigures every component
    _min_level: LogLevel = parse_level(os.getenv("LOG_LEVEL"))

    def __init__(self, context: str = ""):
        """
        Initialize a logger.

        Args:
            context: Prefix shown in every line (e.g. "Agent", "Browser")
        """
        self.context = context

    @classmethod
    def set_level(cls, level: LogLevel | str) -> None:
        """Change the minimum level for every logger in the process."""
        if isinstance(level, str):
            level = parse_level(level)
        cls._min_level = level

    @classmethod
    def get_level(cls) -> LogLevel:
        """Return the current process-wide minimum level."""
        return cls._min_level

    def child(self, child_context: str) -> "Logger":
        """
        Create a logger with additional context.

        Args:
            child_context: Context to append, e.g. a channel name

        Returns:
            A new Logger whose lines show [parent:child]
        """
        new_context = f"{self.context}:{child_context}" if self.context else child_context
        return Logger(new_context)

    def _format_message(self, level: str, message: str, color: str) -> str:
        """Format as [TIMESTAMP] [LEVEL] [context] message."""
        timestamp = datetime.now().isoformat(timespec="seconds")
        context_str = f"[{self.context}] " if self.context else ""

        return (
            f"{Colors.DIM}[{timestamp}]{Colors.RESET} "
            f"{color}[{level}]{Colors.RESET} "
            f"{context_str}{message}"
        )

    def _log(
        self,
        level: LogLevel,
        level_name: str,
        color: str,
        message: str,
        data: dict[str, Any] | None = None
    ) -> None:
        if level < Logger._min_level:
            return

        formatted = self._format_message(level_name, message, color)

        stream = sys.stderr if level >= LogLevel.WARNING else sys.stdout
        print(formatted, file=stream)

        if data:
            data_str = json.dumps(data, indent=2, default=str)
            print(f"{Colors.DIM}{data_str}{Colors.RESET}", file=stream)

    def debug(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log a debug message. Shown only when the level is DEBUG."""
        self._log(LogLevel.DEBUG, "DEBUG", Colors.DEBUG, message, data)

    def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        """Log an info message."""
        self._log(LogLevel.INFO, "INFO", Colors.INFO, message, data)

    def warning(self, message: str, data: dict[str, Any] | None = None) -> None:
        """
        Log a warning.

        Warnings mark degraded but recoverable situations: a dropped
        connection that will be retried, a refused shell command, a config
        file that failed to parse.
        """
        self._log(LogLevel.WARNING, "WARN", Colors.WARNING, message, data)

    def error(self, message: str, error: BaseException | None = None) -> None:
        """
        Log an error message.

        Args:
            message: The error message
            error: Optional exception to include details from
        """
        data = None
        if error:
            data = {
                "error_type": type(error).__name__,
                "error_message": str(error),
            }
        self._log(LogLevel.ERROR, "ERROR", Colors.ERROR, message, data)
