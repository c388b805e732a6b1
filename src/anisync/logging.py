"""Structured logging for anisync.

Two rotating log files (10 MB, 5 backups) live under the log directory:

- ``anisync.log``: every event, human-readable
- ``sync.log``: JSON lines for everything a sync touches, i.e. the list
  engine (``anisync.sync``), the provider adapters (``anisync.providers``)
  and reauthorization (``anisync.auth``)

Inside :func:`sync_context` every event carries a ``sync_list`` key naming
the list being synced, so adapter events in ``sync.log`` can be tied to a
run.  Credential values are masked before any renderer sees them.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5

SYNC_LOGGERS = ("anisync.sync", "anisync.providers", "anisync.auth")

_SECRET_KEYS = frozenset({"access_token", "client_secret", "code", "password", "secret", "token"})
_MASK = "***"


def mask_secrets(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """structlog processor: replace credential values with ``***``."""
    for key in _SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = _MASK
    return event_dict


_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    mask_secrets,
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


class LoggerPrefixFilter(logging.Filter):
    """Pass records from any of the given logger hierarchies."""

    def __init__(self, prefixes: Iterable[str]) -> None:
        super().__init__()
        self.prefixes = tuple(prefixes)

    def filter(self, record: logging.LogRecord) -> bool:
        return any(record.name == p or record.name.startswith(f"{p}.") for p in self.prefixes)


def _file_handler(path: Path, renderer: structlog.types.Processor) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=_BACKUP_COUNT, encoding="utf-8")
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=_shared_processors)
    )
    return handler


@contextmanager
def sync_context(kind: str, provider: str, username: str) -> Iterator[None]:
    """Tag every event logged inside the block with the list being synced."""
    with structlog.contextvars.bound_contextvars(sync_list=f"{kind}:{provider}/{username}"):
        yield


def setup_logging(log_level: str = "info", log_dir: Path | None = None) -> None:
    """Configure structlog on top of stdlib logging.

    *log_level* is a level name such as ``debug`` or ``warning``.  Without a
    *log_dir* no file handlers are installed.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        root.addHandler(_file_handler(log_dir / "anisync.log", structlog.dev.ConsoleRenderer(colors=False)))

        sync_handler = _file_handler(log_dir / "sync.log", structlog.processors.JSONRenderer())
        sync_handler.addFilter(LoggerPrefixFilter(SYNC_LOGGERS))
        root.addHandler(sync_handler)

    # one line per HTTP request or SQL statement is too much below WARNING
    for name in ("httpx", "httpcore", "aiosqlite"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logging.getLogger("anisync").critical(
            "unhandled_exception",
            exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _excepthook  # type: ignore[assignment]
