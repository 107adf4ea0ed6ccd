import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

_configured = False


def configure_logging(level: str = "INFO") -> None:
    """Attach a single stream handler to the ``app`` logger hierarchy"""
    global _configured
    app_logger = logging.getLogger("app")
    app_logger.setLevel(level.upper())
    if _configured:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
    app_logger.addHandler(handler)
    app_logger.propagate = False
    _configured = True
