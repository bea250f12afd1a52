"""Product master shared runtime utilities: settings loader and logging facade."""

import os

from loguru import logger as _logger
from rich.console import Console

from productmaster.config import ConfigError, Settings, load_config
from productmaster.logger import SINK_KEY, Logger, LoggerIOError, new_logger

__version__ = "0.1.0"

_console = Console(stderr=True)

# Configure loguru: package diagnostics go to stderr through Rich, facade
# handles own their sinks
_logger.remove()


def _rich_sink(message: str) -> None:
    _console.print(message.rstrip(), highlight=False, markup=False, emoji=False)


def _is_diagnostic(record) -> bool:
    return SINK_KEY not in record["extra"]


_diagnostics_handler_id = _logger.add(
    _rich_sink,
    level=os.environ.get("PM_BOOTSTRAP_LOG_LEVEL", "INFO"),
    format="{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | {name}:{function}:{line} | {message}",
    filter=_is_diagnostic,
)

__all__ = [
    "ConfigError",
    "Logger",
    "LoggerIOError",
    "Settings",
    "load_config",
    "new_logger",
]
