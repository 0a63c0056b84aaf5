"""
Process-wide logging setup.

Only entry points call this; library modules just use
``logging.getLogger(__name__)``.
"""

import functools
import logging
import os

LOG_ENV_VAR = "VOXFIELD_LOG"
LOG_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'


@functools.lru_cache(maxsize=None)
def setup_logging(verbose: bool = False) -> None:
    """
    Configure the root logger once per process.

    The level defaults to DEBUG with ``verbose`` and INFO otherwise; the
    ``VOXFIELD_LOG`` environment variable (e.g. ``WARNING``) wins over both.
    """
    level = logging.DEBUG if verbose else logging.INFO
    override = os.environ.get(LOG_ENV_VAR)
    if override:
        level = logging.getLevelName(override.upper())
        if not isinstance(level, int):
            level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT)
