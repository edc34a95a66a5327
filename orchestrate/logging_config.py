# orchestrate/logging_config.py
import logging
from logging.config import dictConfig


def setup_logging(level: str = "INFO") -> None:
    """Configures the root logger once at process start."""
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "plain": {
                    "format": "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "formatter": "plain",
                }
            },
            "root": {
                "handlers": ["default"],
                "level": level,
            },
        }
    )
    logging.getLogger(__name__).debug("Logging configured at level %s", level)
