"""
Structured logging for the operator.

Every event carries the operator name and version. Events emitted during a
reconcile pass also carry the context the worker and the phase scheduler
bind: ``cluster``, ``namespace`` and ``phase``. Controllers log the cluster
as its ``namespace/name`` key; ``add_reconcile_context`` splits that key so
every event can be filtered on the same two fields.

Production renders JSON, everything else a colored console.
"""
import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from dbcluster.config.settings import settings

# Libraries that log every request at INFO.
QUIET_LOGGERS = ("uvicorn.access", "kubernetes_asyncio", "aiohttp", "sqlalchemy.engine")


def add_operator_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["operator"] = settings.app_name
    event_dict["version"] = settings.app_version
    return event_dict


def add_reconcile_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Split a ``namespace/name`` cluster key into ``namespace`` and ``cluster``."""
    cluster = event_dict.get("cluster")
    if isinstance(cluster, str) and "/" in cluster:
        namespace, name = cluster.split("/", 1)
        event_dict["namespace"] = namespace
        event_dict["cluster"] = name
    return event_dict


def configure_logging() -> None:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_operator_context,
        add_reconcile_context,
        structlog.processors.format_exc_info,
    ]
    if settings.is_production:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

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
        level=getattr(logging, settings.log_level),
    )
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger for ``name``, usually the calling module's ``__name__``."""
    return structlog.get_logger(name)
