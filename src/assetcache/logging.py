"""
Structured logging for the asset cache.

Every record carries the request it belongs to: the storage key being served
and the stage it has reached. Both live in a context variable, so concurrent
requests on one event loop never see each other's values.

- log_context() / set_stage(): scope and update the request context
- get_logger(): LoggerAdapter that turns keyword arguments into structured fields
- setup_logging(): JSON Lines file output and a rich console handler
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, MutableMapping

from rich.console import Console
from rich.logging import RichHandler
from rich.text import Text

ROOT_LOGGER = "assetcache"

QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")

_request_context: ContextVar[dict[str, str]] = ContextVar("assetcache_request", default={})

_configured = False


def current_context() -> dict[str, str]:
    """Request fields in effect for the running task."""
    return dict(_request_context.get())


def get_request_key() -> str | None:
    return _request_context.get().get("request_key")


def get_stage() -> str | None:
    return _request_context.get().get("stage")


def set_stage(stage: str) -> None:
    """Record the stage the current request has reached."""
    _request_context.set({**_request_context.get(), "stage": stage})


@contextmanager
def log_context(
    request_key: str | None = None, stage: str | None = None
) -> Generator[None, None, None]:
    """Attach request fields to every record logged inside the block.

    Changes made with set_stage() inside the block are undone on exit.
    """
    fields = {
        name: value
        for name, value in (("request_key", request_key), ("stage", stage))
        if value is not None
    }
    token = _request_context.set({**_request_context.get(), **fields})
    try:
        yield
    finally:
        _request_context.reset(token)


class JSONFormatter(logging.Formatter):
    """One JSON object per line: level, logger, message, request context and fields."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry["extra"] = fields
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RequestRichHandler(RichHandler):
    """RichHandler that shows the request key and stage after the level."""

    def get_level_text(self, record: logging.LogRecord) -> Text:
        level_text = super().get_level_text(record)
        context = current_context()
        if not context:
            return level_text
        suffix = Text()
        if "request_key" in context:
            suffix.append(f" {context['request_key']}", style="magenta")
        if "stage" in context:
            suffix.append(f" {context['stage']}", style="cyan")
        return level_text + suffix


class ContextLogger(logging.LoggerAdapter):
    """Adapter accepting structured fields as keyword arguments.

    logger.info("Cached asset", key=key.storage_key, size=size) stores
    {"key": ..., "size": ...} on the record as ``fields``.
    """

    PASSTHROUGH = frozenset({"exc_info", "stack_info", "stacklevel"})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self.PASSTHROUGH}
        for name, value in current_context().items():
            fields.setdefault(name, value)
        kwargs["extra"] = {"fields": fields}
        return msg, kwargs


def setup_logging(
    log_level: str = "INFO",
    log_file: Path | None = None,
    console_output: bool = True,
) -> None:
    """Configure the assetcache logger tree.

    Args:
        log_level: Level name for the console and the tree.
        log_file: JSON Lines file receiving every record at DEBUG and above.
        console_output: Whether to log to stderr through rich.
    """
    global _configured

    level = logging.getLevelName(log_level.upper())
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel(level)
    root.handlers.clear()
    root.propagate = False

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setFormatter(JSONFormatter())
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    if console_output:
        console_handler = RequestRichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setLevel(level)
        root.addHandler(console_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> ContextLogger:
    """Get a logger under the assetcache tree, configuring defaults on first use."""
    if not _configured:
        setup_logging()
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return ContextLogger(logging.getLogger(name), {})
