from __future__ import annotations

import logging
import sys
from typing import Any, MutableMapping

import structlog

APP_NAME = "peering_orchestrator"


def _add_app_context(
    logger: Any,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Enrich log records with the application name.
    """
    event_dict["app"] = APP_NAME
    return event_dict


def setup_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """
    Configure structlog + stdlib logging.

    Call this once at startup. Library modules only call structlog.get_logger.
    json_logs False renders human readable console lines instead of JSON.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        stream=sys.stdout,
    )

    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    processors = [
        structlog.contextvars.merge_contextvars,
        _add_app_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
