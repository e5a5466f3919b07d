"""Logging for runguard.

Engine modules log through :class:`StructuredLogger`, which appends the bound
run context (``run_id``, ``step``, ...) to every message. Logs always go to
stderr; stdout carries command output only.
"""

import logging
import sys
from enum import Enum
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "runguard"

# Context keys printed first, in this order
LEADING_KEYS = ("run_id", "procedure", "step", "stage", "gate")

MAX_VALUE_LENGTH = 200

# Libraries whose request chatter would drown the run log
NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")


class LogLevel(str, Enum):
    """Log level enumeration."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @classmethod
    def from_flags(cls, verbose: int, quiet: bool, default: "LogLevel") -> "LogLevel":
        """Level selected by ``-v``/``-vv``/``-q``, falling back to ``default``."""
        if verbose >= 2:
            return cls.DEBUG
        if verbose == 1:
            return cls.INFO
        if quiet:
            return cls.ERROR
        return default

    @property
    def numeric(self) -> int:
        return getattr(logging, self.value.upper())


def _make_handler(rich_output: bool) -> logging.Handler:
    if rich_output:
        handler: logging.Handler = RichHandler(
            console=Console(stderr=True),
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
            markup=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
    handler._runguard = True  # type: ignore[attr-defined]
    return handler


def setup_logging(
    level: LogLevel = LogLevel.WARNING,
    rich_output: bool = True,
) -> logging.Logger:
    """Send the ``runguard`` logger tree to stderr at ``level``.

    Calling it again replaces the handler installed by the previous call;
    handlers owned by anyone else (e.g. pytest's capture) are left alone.

    Returns:
        The ``runguard`` logger
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in [h for h in logger.handlers if getattr(h, "_runguard", False)]:
        logger.removeHandler(handler)

    logger.addHandler(_make_handler(rich_output))
    logger.setLevel(level.numeric)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger


def _render_value(value: Any) -> str:
    text = str(value)
    if len(text) > MAX_VALUE_LENGTH:
        text = text[: MAX_VALUE_LENGTH - 3] + "..."
    if not text or any(c.isspace() for c in text):
        return repr(text)
    return text


class StructuredLogger:
    """Logger that appends bound run context as ``key=value`` pairs.

    ``None`` values are dropped; run identifiers lead so the lines of one run
    line up when grepping.
    """

    def __init__(self, name: str, **context: Any):
        if name != ROOT_LOGGER and not name.startswith(f"{ROOT_LOGGER}."):
            name = f"{ROOT_LOGGER}.{name}"
        self._logger = logging.getLogger(name)
        self._context = context

    def bind(self, **kwargs: Any) -> "StructuredLogger":
        """Create a new logger with additional context."""
        return StructuredLogger(self._logger.name, **{**self._context, **kwargs})

    def format(self, message: str, **kwargs: Any) -> str:
        """Render ``message`` with the bound and per-call context."""
        context = {k: v for k, v in {**self._context, **kwargs}.items() if v is not None}
        if not context:
            return message

        keys = [k for k in LEADING_KEYS if k in context]
        keys += [k for k in context if k not in LEADING_KEYS]
        pairs = " ".join(f"{k}={_render_value(context[k])}" for k in keys)
        return f"{message} [{pairs}]"

    def log(self, level: int, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        if self._logger.isEnabledFor(level):
            self._logger.log(level, self.format(message, **kwargs), exc_info=exc_info)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log(logging.ERROR, message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """Log at ERROR with the active exception's traceback."""
        self.log(logging.ERROR, message, exc_info=True, **kwargs)
