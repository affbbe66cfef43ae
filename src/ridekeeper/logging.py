"""structlog setup shared by request handling and background sweeps.

Module code logs through the standard library (``logging.getLogger``);
``configure_logging`` routes those records through the same structlog
processor chain, so both kinds of log line carry the correlation id.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

__all__ = [
    "configure_logging",
    "correlation_id_var",
    "get_logger",
    "mask_phone",
    "new_correlation_id",
]

# Set per HTTP request by the middleware and per sweep by the orchestrator
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    cid = uuid.uuid4().hex
    correlation_id_var.set(cid)
    return cid


def mask_phone(phone: str | None) -> str:
    """Phone numbers never reach the logs whole: ``+1415***``."""
    if not phone:
        return "<none>"
    return f"{phone[:5]}***"


def _correlation_processor(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _shared_processors() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        _correlation_processor,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]


def configure_logging(*, json_output: bool = True, level: str = "INFO") -> None:
    """Install the processor chain for structlog and stdlib loggers.

    Args:
        json_output: one JSON object per line; False renders for a terminal.
        level: threshold applied to the root logger.
    """
    shared = _shared_processors()
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            *shared,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                renderer,
            ],
        )
    )
    handler.set_name("ridekeeper")
    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == "ridekeeper"]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # uvicorn's access log duplicates the request metrics
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(**initial: Any) -> structlog.stdlib.BoundLogger:
    """A structlog logger with ``initial`` bound as context."""
    return structlog.get_logger().bind(**initial)  # type: ignore[no-any-return]
