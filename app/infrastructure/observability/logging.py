"""
Structured logging setup for the contact sync service.
Provides JSON-formatted logs with consistent fields for production monitoring.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging with JSON output for production.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            _add_service_name,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def _add_service_name(logger, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Tag every sync-related entry with the service name."""
    event_dict.setdefault("service", "contact-sync")
    return event_dict


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


def log_sync_result(
    user_id: str,
    platforms: list[dict[str, Any]],
    total_contacts: int,
    total_messages: int,
    cross_platform_merges: int,
    errors: list[str],
) -> None:
    """Log one summary line per orchestration run with consistent fields."""
    logger = get_logger("contact_sync")

    log_data = {
        "user_id": user_id,
        "platforms": platforms,
        "total_contacts": total_contacts,
        "total_messages": total_messages,
        "cross_platform_merges": cross_platform_merges,
        "error_count": len(errors),
        "event_type": "sync_run",
    }

    if errors:
        logger.warning("Unified sync finished with errors", errors=errors[:20], **log_data)
    else:
        logger.info("Unified sync finished", **log_data)


def log_request(method: str, path: str, status_code: int, duration_ms: float, user_id: str = None):
    """Log HTTP requests with consistent fields."""
    logger = get_logger("http")

    log_data = {
        "method": method,
        "path": path,
        "status_code": status_code,
        "duration_ms": duration_ms,
        "event_type": "http_request",
    }

    if user_id:
        log_data["user_id"] = user_id

    if status_code >= 400:
        logger.warning("HTTP request failed", **log_data)
    else:
        logger.info("HTTP request completed", **log_data)
