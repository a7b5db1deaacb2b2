"""Logging setup for fleetplay.

- Verbosity flags (-v, -vv, -vvv) map to INFO, DEBUG and a custom TRACE
  level below DEBUG
- Console and optional file handlers, with a more detailed format for
  the file and at high verbosity
- log_performance() times a block and logs its duration
- StructuredLogger appends `(key=value, ...)` context, used by the
  executor to tag messages with the host and task they belong to
"""

import logging
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, MutableMapping

DEFAULT_FORMAT = "%(levelname)s [%(name)s] %(message)s"
DEBUG_FORMAT = "%(asctime)s %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"
TRACE_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)s [%(name)s:%(funcName)s:%(lineno)d] %(message)s"

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

VERBOSITY_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
    2: logging.DEBUG,
    3: TRACE,
}

LEVEL_NAMES = {
    "trace": TRACE,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def get_level_from_verbosity(verbosity: int) -> int:
    """Convert a count of -v flags to a logging level."""
    return VERBOSITY_LEVELS[max(0, min(verbosity, 3))]


def get_level_from_name(level_name: str) -> int:
    """Convert a level name (trace, debug, info, ...) to a logging level.

    Raises:
        ValueError: If the name is not a known level
    """
    try:
        return LEVEL_NAMES[level_name.lower()]
    except KeyError:
        valid = ", ".join(LEVEL_NAMES)
        raise ValueError(f"Invalid log level: {level_name}. Valid levels: {valid}")


def configure_logging(
    level: int = logging.WARNING,
    log_file: str | Path | None = None,
    file_level: int | None = None,
) -> None:
    """Configure the root logger for a fleetplay run.

    Args:
        level: Console level
        log_file: Also write logs to this file (parent directories are created)
        file_level: Level for the file handler (defaults to DEBUG)

    Example:
        >>> configure_logging(logging.INFO)
        >>> configure_logging(logging.WARNING, log_file="run.log", file_level=TRACE)
    """
    if level <= TRACE:
        console_format = TRACE_FORMAT
    elif level <= logging.DEBUG:
        console_format = DEBUG_FORMAT
    else:
        console_format = DEFAULT_FORMAT

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(console_format))
    root.addHandler(console)

    effective = level
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_level = logging.DEBUG if file_level is None else file_level
        file_handler = logging.FileHandler(path)
        file_handler.setLevel(file_level)
        file_handler.setFormatter(logging.Formatter(DEBUG_FORMAT))
        root.addHandler(file_handler)
        effective = min(level, file_level)

    root.setLevel(effective)
    # asyncssh logs every channel at INFO
    logging.getLogger("asyncssh").setLevel(max(effective, logging.WARNING))


def _format_context(context: dict[str, Any]) -> str:
    return ", ".join(f"{k}={v}" for k, v in context.items())


@contextmanager
def log_performance(
    logger: logging.Logger,
    operation: str,
    level: int = logging.INFO,
    threshold: float | None = None,
    **context: Any,
) -> Generator[None, None, None]:
    """Time a block and log how long it took.

    Args:
        logger: Logger to write to
        operation: Description of the operation being timed
        level: Log level
        threshold: Only log when the block took at least this many seconds
        **context: Extra key=value pairs appended to the message

    Example:
        >>> with log_performance(logger, "Play 'web'", hosts=3):
        ...     await executor.run_play(0, graph)
        INFO Play 'web' completed in 1.204s (hosts=3)
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        duration = time.perf_counter() - start
        if threshold is None or duration >= threshold:
            message = f"{operation} completed in {duration:.3f}s"
            if context:
                message += f" ({_format_context(context)})"
            logger.log(level, message)


class StructuredLogger(logging.LoggerAdapter):
    """Logger adapter that appends key=value context to every message.

    Example:
        >>> log = StructuredLogger("fleetplay.executor", host="web01")
        >>> log.info("Running task", task="install nginx")
        INFO [fleetplay.executor] Running task (host=web01, task=install nginx)
    """

    def __init__(self, name: str, **context: Any) -> None:
        super().__init__(logging.getLogger(name), {})
        self.context: dict[str, Any] = dict(context)

    def bind(self, **context: Any) -> "StructuredLogger":
        """Return a new logger with additional context."""
        return StructuredLogger(self.logger.name, **{**self.context, **context})

    def trace(self, message: str, **extra: Any) -> None:
        self.log(TRACE, message, **extra)

    def log(self, level: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        # anything that is not a logging keyword is context for this message
        logging_kwargs = {k: kwargs.pop(k) for k in ("exc_info", "stack_info", "stacklevel") if k in kwargs}
        combined = {**self.context, **kwargs}
        if combined:
            msg = f"{msg} ({_format_context(combined)})"
        super().log(level, msg, *args, **logging_kwargs)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        return msg, kwargs

    def debug(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("exc_info", True)
        self.log(logging.ERROR, msg, *args, **kwargs)


def get_logger(name: str, **context: Any) -> StructuredLogger:
    """Get a StructuredLogger with initial context."""
    return StructuredLogger(name, **context)
