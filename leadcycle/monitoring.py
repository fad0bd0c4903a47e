import logging
import os
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

_logger = logging.getLogger("leadcycle")
_initialized = False

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def init_monitoring() -> None:
    """Configure root logging and, when ``SENTRY_DSN`` is set, Sentry."""
    global _initialized
    if _initialized:
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)

    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        _logger.info("Sentry DSN not provided; errors are only logged")
        _initialized = True
        return

    sentry_sdk.init(
        dsn=dsn,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
        environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
        send_default_pii=False,
    )
    _logger.info("Sentry initialized for %s", os.getenv("SENTRY_ENVIRONMENT", "development"))
    _initialized = True


def capture_exception(exc: BaseException, **tags: Any) -> None:
    """Log ``exc`` and forward it to Sentry with ``tags`` (e.g. job_id, session_id)."""
    _logger.error("Exception captured %s", tags or "", exc_info=exc)
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        scope.capture_exception(exc)
