"""
Logging Configuration
One stdout handler on the ``factory`` logger; every component logs through a
child of it, so the level is set in one place from ``LOG_LEVEL`` / ``DEBUG``.
"""
import logging
import sys
from typing import Optional

from factory_sync.core.config import settings

ROOT_LOGGER = "factory"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def configured_level() -> int:
    """DEBUG when ``settings.debug`` is on, otherwise ``settings.log_level`` (INFO if unrecognised)."""
    if settings.debug:
        return logging.DEBUG
    level = getattr(logging, settings.log_level.upper(), None)
    return level if isinstance(level, int) else logging.INFO


def setup_logging(component: Optional[str] = None, level: Optional[int] = None) -> logging.Logger:
    """
    Return the logger for ``component`` (``factory.<component>``).

    The shared handler is attached once, to the ``factory`` logger; component
    loggers carry no handler of their own and propagate to it.
    """
    if level is None:
        level = configured_level()

    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
    root.setLevel(level)

    return root.getChild(component) if component else root


# Pre-configured loggers for each component
client_logger = setup_logging("n8n")
catalog_logger = setup_logging("catalog")
importer_logger = setup_logging("importer")
validator_logger = setup_logging("validator")
sync_logger = setup_logging("sync")
reset_logger = setup_logging("reset")
store_logger = setup_logging("store")
gateway_logger = setup_logging("gateway")
