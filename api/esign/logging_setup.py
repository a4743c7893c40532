import logging

from .config import LOG_LEVEL

_configured = False


def configure_logging(level: str = LOG_LEVEL):
    global _configured
    if _configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _configured = True
