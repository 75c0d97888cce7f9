import logging
import logging.config

from billcycle.config import settings

_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    """Configure process-wide logging once.

    Console output only; deployments ship stdout to their collector.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return
    log_level = (level or settings.log_level or "INFO").upper()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "standard": {
                    "format": "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
                },
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "standard",
                    "stream": "ext://sys.stdout",
                },
            },
            "loggers": {
                "billcycle": {
                    "level": log_level,
                    "handlers": ["console"],
                    "propagate": False,
                },
                "sqlalchemy.engine": {"level": "WARNING"},
                "celery": {"level": "INFO"},
            },
            "root": {"level": "WARNING", "handlers": ["console"]},
        }
    )
    _CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
