"""
Structured logging for smartpark

structlog renders both its own loggers and stdlib `logging.getLogger(__name__)`
loggers, so every line carries the request id bound by RequestIDMiddleware.
Device keys, bearer tokens and service keys are masked before rendering.
"""
import logging
from typing import Any, Callable, Dict

import structlog

SERVICE_NAME = "smartpark-api"

# Event keys whose values are credentials
REDACTED_KEYS = frozenset({"api_key", "x_device_key", "authorization", "token", "service_key", "password"})
REDACTED = "***"

# Libraries that are chatty at INFO
NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite", "asyncio")


def redact_credentials(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in REDACTED_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    raw = event_dict.get("raw")
    if isinstance(raw, dict) and REDACTED_KEYS.intersection(raw):
        event_dict["raw"] = {k: (REDACTED if k in REDACTED_KEYS else v) for k, v in raw.items()}
    return event_dict


def service_context(environment: str) -> Callable:
    def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict
    return add_service_context


def configure_logging(log_level: str = "INFO", json_logs: bool = True, environment: str = "production"):
    """
    Configure structlog and route stdlib logging through it

    JSON lines in production; colored console output when json_logs is off.
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.format_exc_info,
        service_context(environment),
        redact_credentials,
    ]
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level, *shared_processors,
                    structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared_processors,
    ))
    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(log_level.upper())

    if log_level.upper() != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None):
    """structlog logger for key/value events, e.g. get_logger(__name__).info("reservation_created", ...)"""
    return structlog.get_logger(name) if name else structlog.get_logger()
