"""
Logging setup for the API and the background workers.

structlog events are handed to stdlib logging as `extra` fields and
rendered by python-json-logger, so event keys land as top-level JSON
fields next to whatever SQLAlchemy, uvicorn or httpx log themselves.
Every line carries the service name and environment; the API adds the
request id and each worker its name through structlog.contextvars.
"""
import logging
import sys

import structlog
from pythonjsonlogger.json import JsonFormatter

from storebot.config import Settings, get_settings

# Loggers that report every connection or request at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio", "uvicorn.access")


def bind_request_context(request_id: str, method: str, path: str) -> None:
    """Tag events logged while handling one API request."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        component="api", request_id=request_id, method=method, path=path
    )


def bind_worker_context(worker: str) -> None:
    """Tag every event logged by a background worker with its name."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(component="worker", worker=worker)


def build_json_handler(settings: Settings) -> logging.Handler:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            "%(levelname)s %(name)s %(message)s",
            rename_fields={"levelname": "level", "name": "logger", "message": "event"},
            static_fields={"service": settings.app_name, "env": settings.app_env},
            timestamp=True,
        )
    )
    return handler


def setup_logging(settings: Settings | None = None) -> None:
    """Configure structlog and the root logger. Safe to call more than once."""
    settings = settings or get_settings()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.render_to_log_kwargs,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers = [build_json_handler(settings)]
    root_logger.setLevel(settings.log_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info("logging_configured", log_level=settings.log_level)
