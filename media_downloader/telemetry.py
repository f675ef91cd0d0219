"""Span-style instrumentation on top of structlog contextvars."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog

from .config import TelemetryConfig


@asynccontextmanager
async def span(
    name: str, logger: structlog.stdlib.BoundLogger | None = None, **fields: Any
) -> AsyncIterator[structlog.stdlib.BoundLogger]:
    """Bind ``fields`` for the duration of the block and log start/finish.

    Fields bound here (``job_id``, ``fingerprint``...) are merged into every
    event emitted by any logger inside the block, including nested spans.
    Each task runs in its own context, so sibling workers do not leak fields.
    """

    log = logger or structlog.get_logger("media_downloader.telemetry")
    started = time.perf_counter()
    with structlog.contextvars.bound_contextvars(span=name, **fields):
        log.debug(f"{name}_started")
        try:
            yield log
        except BaseException as exc:
            log.debug(
                f"{name}_errored",
                error=type(exc).__name__,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        log.debug(
            f"{name}_finished",
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )


def bind(**fields: Any) -> None:
    """Attach extra fields (e.g. a late-resolved fingerprint) to the current span."""

    structlog.contextvars.bind_contextvars(**fields)


def announce(config: TelemetryConfig | None, service_name: str, logger: structlog.stdlib.BoundLogger) -> None:
    if config is None or not config.enabled:
        logger.info("telemetry_disabled", service=service_name)
        return
    logger.info("telemetry_endpoint_configured", service=service_name, endpoint=config.endpoint)


__all__ = ["announce", "bind", "span"]
