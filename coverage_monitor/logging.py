"""Structured logging for scans, API requests and operator tooling.

Everything goes through structlog on top of the stdlib root logger, written to
stderr so that CLI commands can print JSON on stdout. A scan binds a
``scan_id`` (and each source its name) into context variables, so every line
emitted while that source runs carries them without threading loggers around.
"""

import logging
import sys
import time
import uuid
from pathlib import Path
from typing import Any

import orjson
import structlog
from structlog import contextvars, processors, stdlib

from .config import get_settings

NOISY_LOGGERS = ("httpx", "httpcore", "aiohttp.access", "aiohttp.client", "aiosqlite", "asyncio")


def _orjson_dumps(event: dict[str, Any], default: Any = None, **_: Any) -> str:
    return orjson.dumps(event, default=default or str).decode()


def setup_logging(
    log_level: str | None = None,
    json_logging: bool | None = None,
    log_file: Path | None = None
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR), defaults to LOG_LEVEL
        json_logging: JSON lines instead of console output, defaults to JSON_LOGGING
        log_file: Also append records to this file
    """
    settings = get_settings()
    level = getattr(logging, (log_level or settings.log_level).upper())
    json_logging = settings.json_logging if json_logging is None else json_logging

    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level, force=True)

    chain: list[Any] = [
        contextvars.merge_contextvars,
        stdlib.filter_by_level,
        stdlib.add_logger_name,
        stdlib.add_log_level,
        stdlib.PositionalArgumentsFormatter(),
        processors.TimeStamper(fmt="iso", utc=True),
        processors.StackInfoRenderer(),
    ]
    if json_logging:
        chain += [processors.format_exc_info, processors.JSONRenderer(serializer=_orjson_dumps)]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=chain,
        wrapper_class=stdlib.BoundLogger,
        logger_factory=stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logging.getLogger().addHandler(handler)


def quiet_third_party(level: int = logging.WARNING) -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def new_scan_id() -> str:
    return uuid.uuid4().hex[:12]


def log_api_request(
    method: str,
    path: str,
    status_code: int,
    elapsed: float,
    **kwargs: Any
) -> dict[str, Any]:
    """Fields for one handled trigger-API request.

    Args:
        method: HTTP method
        path: Request path
        status_code: Response status
        elapsed: Handling time in seconds

    Returns:
        Keyword arguments for a logger call
    """
    return {
        "event": "api_request",
        "method": method,
        "path": path,
        "status_code": status_code,
        "elapsed_ms": round(elapsed * 1000, 1),
        **kwargs,
    }


def log_processing_stage(
    stage: str,
    input_count: int,
    output_count: int,
    duration: float | None = None,
    **kwargs: Any
) -> dict[str, Any]:
    """Fields for a pipeline stage that turns N inputs into M outputs.

    Used for candidate filtering (candidates in, items out), whole scans
    (sources in, rows inserted) and syndication passes (items examined,
    items grouped).
    """
    data = {
        "event": "processing_stage",
        "stage": stage,
        "input_count": input_count,
        "output_count": output_count,
        "dropped": max(input_count - output_count, 0),
        **kwargs,
    }
    if duration is not None:
        data["duration"] = round(duration, 3)
    return data


def log_error(error: Exception, context: str | None = None, **kwargs: Any) -> dict[str, Any]:
    data = {
        "event": "error",
        "error_type": error.__class__.__name__,
        "error_message": str(error),
        **kwargs,
    }
    if context:
        data["context"] = context
    return data


class PerformanceLogger:
    """Time a block and log its outcome.

    ``duration`` stays readable after the block exits, so callers can reuse
    the measurement in their own results.
    """

    def __init__(self, operation: str, logger: structlog.stdlib.BoundLogger, **context: Any):
        self.operation = operation
        self.logger = logger
        self.context = context
        self.start_time: float | None = None
        self.duration: float | None = None

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.monotonic()
        self.logger.debug("operation_started", operation=self.operation, **self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is None:
            return
        self.duration = time.monotonic() - self.start_time
        fields = {"operation": self.operation, "duration": round(self.duration, 3), **self.context}
        if exc_type is None:
            self.logger.info("operation_completed", **fields)
        else:
            self.logger.error(
                "operation_failed",
                error_type=exc_type.__name__,
                error_message=str(exc_val) if exc_val else None,
                **fields,
            )

