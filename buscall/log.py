"""Logging configuration.

This module wraps the :mod:`structlog` framework to provide structured logging for bus
clients. A chain of "processors" (callables) filters or transforms events produced by
log statements.

To the greatest extent possible, this module favors native :mod:`structlog`
functionality over integration with the standard :mod:`logging` module. Every logger
this module produces is async-compatible, so log statements inside coroutines read
``await logger.info(...)``.

Note:
    An *unbound* logger is a proxy that borrows its configuration from the global
    configuration set by :func:`buscall.log.configure`. Binding a logger (calling
    ``bind``) copies the global configuration into the logger's local state. Long-running
    workers should bind once and reuse the bound logger.
"""

import functools
import logging
import typing
from collections.abc import Callable, MutableMapping
from typing import Any, Literal, NoReturn, Union

import orjson as json
import structlog
import structlog.contextvars
import structlog.processors
from structlog.stdlib import AsyncBoundLogger as AsyncLogger

from .exception import BusBaseException

__all__ = [
    'AsyncLogger',
    'LEVELS',
    'configure',
    'get_level_num',
    'get_logger',
    'get_null_logger',
]


Event = MutableMapping[str, Any]
ProcessorReturnType = Union[Event, str, bytes]
Processor = Callable[[Any, str, Event], ProcessorReturnType]
LEVELS: list[str] = ['debug', 'info', 'warn', 'error', 'critical']
"""Log severity levels, in ascending order of severity.

============ ================================= =========================================
Level        Description                       Example
============ ================================= =========================================
``debug``    Frequent, low-level tracing.      A method call is dispatched.
``info``     Normal operation (default level). A connection closes with pending calls.
``warn``     Unusual or anomalous events.      A notification queue is full at close.
``error``    Failure mode.                     A reply cannot be decoded.
``critical`` Cannot continue running.
============ ================================= =========================================
"""


def get_logger(*factory_args: Any, **context: Any) -> AsyncLogger:
    """Get an unbound async-compatible logger.

    Parameters:
        factory_args: Positional arguments passed to the logger factory.
        context: Contextual variables added to every event produced by this logger.
    """
    logger = structlog.get_logger(*factory_args, **context, wrapper_class=AsyncLogger)
    return typing.cast(AsyncLogger, logger)


def drop(_logger: AsyncLogger, _method: str, _event: Event, /) -> NoReturn:
    """A simple :mod:`structlog` processor to drop all events."""
    raise structlog.DropEvent


def get_null_logger() -> AsyncLogger:
    """Get an async-compatible logger that drops all events unconditionally."""
    return get_logger(processors=[drop])


@functools.lru_cache(maxsize=16)
def get_level_num(level_name: str, /, *, default: int = logging.DEBUG) -> int:
    """Translate a :mod:`logging` level name into its numeric value.

    Parameters:
        level_name: A case-insensitive name, such as ``'DEBUG'``.
        default: The numeric level to return if the name is invalid.

    Example:
        >>> get_level_num('INFO')
        20
        >>> assert get_level_num('DNE') == logging.DEBUG == 10
    """
    level = getattr(logging, level_name.upper(), None)
    return level if isinstance(level, int) else default


def _filter_by_level(level: str, /) -> Processor:
    """Build a :mod:`structlog` processor to filter events by log level (severity)."""
    min_level = get_level_num(level)

    def processor(
        _logger: AsyncLogger,
        method: str,
        event: ProcessorReturnType,
        /,
    ) -> ProcessorReturnType:
        if get_level_num(method) < min_level:
            raise structlog.DropEvent
        return event

    return processor


def _add_exc_context(_logger: AsyncLogger, _method: str, event: Event, /) -> Event:
    """A processor to add the context of a :class:`BusBaseException` to the event.

    When the keys of the exception context clash with those of the event, the event's
    entries take priority.
    """
    exception = event.get('exc_info')
    if isinstance(exception, BusBaseException):
        event = exception.context | dict(event)
    return event


def configure(
    *,
    fmt: Literal['json', 'pretty'] = 'json',
    level: str = 'INFO',
) -> None:
    """Configure :mod:`structlog` with the desired log format and filtering.

    Parameters:
        fmt: The format of events written to standard output. ``'pretty'`` is
            human-readable and renders tracebacks. ``'json'`` produces `jsonlines
            <https://jsonlines.org/>`_ suitable for machine consumption.
        level: The minimum log level (inclusive) that should be processed. Severities
            are compared using :func:`buscall.log.get_level_num`.
    """
    logging.captureWarnings(True)
    renderers: list[Processor] = []
    logger_factory: Callable[..., Union[structlog.PrintLogger, structlog.BytesLogger]]
    if fmt == 'pretty':
        renderers.append(structlog.processors.ExceptionPrettyPrinter())
        renderers.append(structlog.dev.ConsoleRenderer(pad_event=40))
        logger_factory = structlog.PrintLogger
    else:
        renderers.append(structlog.processors.JSONRenderer(serializer=json.dumps))
        logger_factory = structlog.BytesLogger

    structlog.configure(
        cache_logger_on_first_use=True,
        wrapper_class=AsyncLogger,
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            _filter_by_level(level),
            _add_exc_context,
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt='iso'),
            *renderers,
        ],
        logger_factory=logger_factory,
    )
