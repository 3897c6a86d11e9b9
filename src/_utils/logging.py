# ==============================================================================
# Logging
# ==============================================================================
#
# Rich-based logging configuration shared by the session client, the Ray
# Train workers and the serving deployment.
#
# Features:
#   - RichHandler with markup enabled ([cyan]...[/cyan] in messages)
#   - Extra SUCCESS level between INFO and WARNING (logger.success(...))
#   - log_section() prints a titled rule to separate workflow phases
#   - Ray Data's chatty logger is quietened to WARNING
#
# Usage:
#   from src._utils.logging import get_logger, log_section
#   logger = get_logger(__name__)
#   log_section("Training Pipeline", "🚀")
#   logger.success("✨ Done")
#
# ==============================================================================

import logging
import os

from rich.console import Console
from rich.logging import RichHandler

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

_console = Console(stderr=True)
_configured = False


class SessionLogger(logging.Logger):
    """Logger with a ``success`` method."""

    def success(self, msg, *args, **kwargs):
        if self.isEnabledFor(SUCCESS):
            self._log(SUCCESS, msg, args, **kwargs)


logging.setLoggerClass(SessionLogger)


def setup_logging(level: str | int | None = None) -> None:
    """Configure the root logger once per process (driver and Ray workers)."""
    global _configured
    if _configured:
        return

    level = level or os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[
            RichHandler(
                console=_console,
                markup=True,
                rich_tracebacks=True,
                show_path=False,
            )
        ],
        force=True,
    )

    logging.getLogger("ray.data").setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> SessionLogger:
    setup_logging()
    return logging.getLogger(name)  # type: ignore[return-value]


def log_section(title: str, emoji: str = "🔹") -> None:
    """Print a horizontal rule with a title."""
    setup_logging()
    _console.rule(f"{emoji} [bold]{title}[/bold]")
