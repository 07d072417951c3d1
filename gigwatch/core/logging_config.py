"""Process-wide logging setup with per-tick correlation.

:func:`configure_logging` is called once by ``__main__``; every other module
just does ``logger = logging.getLogger(__name__)``.

Every record passes through :class:`TickContextFilter`, which stamps it with
the id of the tick currently running in this task (``"-"`` outside a tick),
so all lines of one scheduled attempt can be grepped together even when two
ticks overlap in one process.

Formats:

* ``text``: ``2026-03-01 12:00:00 INFO     [a3f2b1c0] gigwatch.x: message``
* ``json``: one object per line, see :class:`JsonFormatter`.

``LOG_LEVEL`` and ``LOG_FORMAT`` are read from the environment when the
arguments are omitted.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

__all__ = ["configure_logging", "JsonFormatter", "TICK_ID_CTX", "TickContextFilter"]

#: Id of the tick running in the current task, bound by
#: :meth:`~gigwatch.orchestrator.trigger.SchedulerTrigger.fire`.
TICK_ID_CTX: ContextVar[str] = ContextVar("tick_id", default="-")

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS = ("text", "json")

_TEXT_FORMAT = "%(asctime)s %(levelname)-8s [%(tick_id)s] %(name)s: %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty below WARNING; only let them through when debugging.
_THIRD_PARTY = ("httpx", "httpcore", "asyncio", "aiosqlite")

# Attributes every LogRecord has; anything else arrived via ``extra=``.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}


class TickContextFilter(logging.Filter):
    """Stamp ``record.tick_id`` from :data:`TICK_ID_CTX`."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.tick_id = TICK_ID_CTX.get()
        return True


def _choose(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    chosen = value or os.environ.get(env_var) or default
    chosen = chosen.upper() if allowed is _LEVELS else chosen.lower()
    if chosen not in allowed:
        raise ValueError(f"Unknown {env_var} {chosen!r}. Must be one of: {', '.join(allowed)}")
    return chosen


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install the gigwatch handler on the root logger.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL; ``$LOG_LEVEL`` or INFO.
        fmt: ``text`` or ``json``; ``$LOG_FORMAT`` or text.
        force: Replace existing root handlers.  Without it, an already
            configured root logger only has its level adjusted.

    Raises:
        ValueError: If the level or format is not recognised.
    """
    level_name = _choose(level, "LOG_LEVEL", "INFO", _LEVELS)
    fmt_name = _choose(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(level_name)
    if root.handlers and not force:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(TickContextFilter())
    if fmt_name == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT))
    root.handlers = [handler]

    third_party_level = logging.DEBUG if level_name == "DEBUG" else logging.WARNING
    for name in _THIRD_PARTY:
        logging.getLogger(name).setLevel(third_party_level)


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    ``tick_id`` and ``event`` are promoted to top-level keys because they are
    what log queries filter on; any other ``extra=`` values are grouped under
    ``"extra"``::

        {"ts": "2026-03-01T12:00:00.123Z", "level": "WARNING",
         "logger": "gigwatch.orchestrator.trigger", "tick_id": "a3f2b1c0",
         "event": "TICK_FAILURE", "message": "Attempt failed ...", "extra": {}}
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        created = datetime.fromtimestamp(record.created, tz=UTC)
        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and key not in ("tick_id", "event")
        }
        payload: dict[str, Any] = {
            "ts": created.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "tick_id": getattr(record, "tick_id", TICK_ID_CTX.get()),
            "event": getattr(record, "event", None),
            "message": record.getMessage(),
            "extra": extra,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)
