"""Logging configuration for the billing engine"""
import logging

from billing.core.config import settings

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Named loggers written to by the services
AUDIT_LOGGER = "billing_audit"
ROLLOVER_LOGGER = "rollover"
API_ACCESS_LOGGER = "api_access"

NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine", "opentelemetry", "redis")


def setup_logging():
    """Configure root logging and the named billing loggers"""
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )

    # Transition audit lines and tick summaries stay on even when LOG_LEVEL=WARNING
    logging.getLogger(AUDIT_LOGGER).setLevel(logging.INFO)
    logging.getLogger(ROLLOVER_LOGGER).setLevel(logging.INFO)
    logging.getLogger(API_ACCESS_LOGGER).setLevel(logging.INFO if settings.API_ACCESS_LOG else logging.WARNING)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
