"""Logging for the API, the query client and the worker.

Everything logs under the ``gitfreelas`` logger tree. ``setup_logging`` can be
called by every entry point; it keeps a single console handler.
"""

import logging

HANDLER_NAME = "gitfreelas-console"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level="INFO") -> logging.Logger:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        # getLevelName returns "Level X" for names it does not know
        if not isinstance(level, int):
            level = logging.INFO

    logger = logging.getLogger("gitfreelas")
    logger.setLevel(level)
    logger.propagate = False

    handler = next((h for h in logger.handlers if h.get_name() == HANDLER_NAME), None)
    if handler is None:
        handler = logging.StreamHandler()
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    handler.setLevel(level)
    return logger
