"""
Centralized Logging Configuration for Soul Evolution

Structured logging via structlog. Every module does:

    from logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("proposal_admitted", proposal_id=proposal.id, agent_id=agent_id)

Author: Soul Evolution Team
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

import config


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    json_logs: bool = False
) -> None:
    """
    Configure structlog + stdlib logging for the whole service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path for logs
        json_logs: Use JSON format for production (better parsing)
    """
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(getattr(logging, level.upper(), logging.INFO))
        logging.getLogger().addHandler(file_handler)


def get_logger(name: str | None = None) -> Any:
    """Get a structlog logger bound to `name`."""
    return structlog.get_logger(name)


def log_proposal_transition(
    proposal_id: str,
    from_state: str,
    to_state: str,
    actor: str,
    reason: str
) -> None:
    """Log proposal state transition with structured data"""
    logger = get_logger("proposal_transition")
    logger.info(
        "proposal_transition",
        proposal_id=proposal_id,
        from_state=from_state,
        to_state=to_state,
        actor=actor,
        reason=reason,
        timestamp=datetime.now(timezone.utc).isoformat()
    )


def log_error(
    error: Exception,
    context: dict | None = None,
    level: str = "ERROR"
) -> None:
    """Log error with full context and stack trace"""
    logger = get_logger("error_handler")
    log_func = getattr(logger, level.lower(), logger.error)

    log_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
    }

    if context:
        log_data.update(context)

    log_func("error_occurred", **log_data, exc_info=error)


# Auto-setup on import
setup_logging(
    level=config.LOG_LEVEL,
    log_file=config.LOG_FILE,
    json_logs=config.JSON_LOGS
)
