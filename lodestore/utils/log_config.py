import logging
import sys
from typing import Optional

from ..config import AppSettings, get_settings
from ..middlewares.logging_middleware import CorrelationIdFilter

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Optional[AppSettings] = None) -> None:
    """Set up stdout logging for applications embedding lodestore."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level_value,
        format=LOG_FORMAT,
        stream=sys.stdout,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(CorrelationIdFilter())
