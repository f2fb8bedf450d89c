import logging
from typing import Optional, Union

from callsig.config import get_config

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: Union[str, int, None] = None):
    """Set up root logging; the level defaults to ``logging.level`` from the configuration."""
    if level is None:
        level = get_config().get("logging", {}).get("level", "INFO")
    if isinstance(level, str):
        level = level.upper()
    logging.basicConfig(level=level, format=LOG_FORMAT)
