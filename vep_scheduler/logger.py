"""Logging helpers for the VEP scheduler."""

import logging


def get_logger(name: str = "VepScheduler") -> logging.Logger:
    """Return a named :class:`logging.Logger` instance.

    Handlers and levels are configured once via ``logging.basicConfig()`` in
    ``main.py``; this helper never attaches handlers itself.
    """
    return logging.getLogger(name)
