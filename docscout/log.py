"""Logging setup for Docscout.

Library modules only create loggers with ``logging.getLogger(__name__)``;
applications call :func:`setup_logging` once at startup.
"""

import logging
import sys
from typing import Union

# Third-party loggers that are chatty at INFO
_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "urllib3", "sentence_transformers")


def setup_logging(level: Union[int, str] = logging.INFO, quiet_third_party: bool = True) -> None:
    """Configure the ``docscout`` logger hierarchy.

    Adds a stderr handler only if none exists yet, so calling this twice (or
    from inside an application that already configured logging) is harmless.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("docscout")
    logger.setLevel(level)

    if not logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
        )
        logger.addHandler(handler)

    if quiet_third_party:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))
