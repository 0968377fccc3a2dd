"""
ScriptWatch Structured Logging Module.

structlog setup shared by the loader, the API and the scripts themselves.
Requires Python 3.11+.
"""

import logging
import sys
import threading
from pathlib import Path
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from utils.config import LoggingSettings, get_settings

_configured = False


def _add_runtime_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag entries with the application and the thread that logged them."""
    settings = get_settings()
    event_dict.setdefault("app", settings.app_name)
    event_dict["environment"] = settings.environment
    # Poll loop, script executor and event loop threads interleave
    event_dict["thread"] = threading.current_thread().name
    return event_dict


def _renderer(config: LoggingSettings) -> list[Processor]:
    if config.format == "json":
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [
        structlog.dev.ConsoleRenderer(
            colors=config.file_path is None and sys.stdout.isatty(),
            exception_formatter=structlog.dev.plain_traceback,
        )
    ]


def _logger_factory(file_path: Path | None) -> Any:
    """Write to the configured log file, or stdout."""
    if file_path is None:
        return structlog.PrintLoggerFactory()
    file_path.parent.mkdir(parents=True, exist_ok=True)
    return structlog.WriteLoggerFactory(file=file_path.open("a", encoding="utf-8"))


def configure_logging(force: bool = False) -> None:
    """
    Configure structlog and the standard logging module.

    Safe to call from every entry point; only the first call (or a
    forced one) takes effect.
    """
    global _configured
    if _configured and not force:
        return

    config = get_settings().logging
    level = logging.getLevelName(config.level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_runtime_context,
            *_renderer(config),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=_logger_factory(config.file_path),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for noisy in ("watchdog", "httpcore", "httpx", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger.

    Args:
        name: Logger name, usually the component doing the logging

    Returns:
        structlog logger
    """
    return structlog.get_logger(name)


def get_script_logger(name: str, path: Path) -> structlog.stdlib.BoundLogger:
    """Logger handed to a running script, bound to that script."""
    return get_logger("script").bind(script=name, path=path.as_posix())


logger = get_logger("scriptwatch")


class LoggerMixin:
    """
    Gives a class a `log` attribute bound to its class name.

    Usage:
        class Registry(LoggerMixin):
            def add(self, path):
                self.log.info("script_added", path=path)
    """

    @property
    def log(self) -> structlog.stdlib.BoundLogger:
        try:
            return self._logger
        except AttributeError:
            self._logger = get_logger(type(self).__name__).bind(component=type(self).__name__)
            return self._logger
