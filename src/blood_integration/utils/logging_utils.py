"""Logging configuration shared by the command-line entry points."""

import logging
import sys

import scanpy as sc

LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"

# scanpy verbosity matching each logging level
_SCANPY_VERBOSITY = {
    logging.DEBUG: 3,
    logging.INFO: 2,
    logging.WARNING: 1,
    logging.ERROR: 0,
    logging.CRITICAL: 0,
}


def setup_logging(level="INFO"):
    """
    Configure the root logger and scanpy verbosity.

    Parameters
    ----------
    level : str or int
        Logging level name (``"INFO"``) or number.

    Returns
    -------
    logging.Logger
        The package logger.
    """
    if isinstance(level, str):
        numeric_level = logging.getLevelName(level.upper())
        if not isinstance(numeric_level, int):
            numeric_level = logging.INFO
    else:
        numeric_level = level

    logging.basicConfig(level=numeric_level, format=LOG_FORMAT, stream=sys.stdout, force=True)
    sc.settings.verbosity = _SCANPY_VERBOSITY.get(numeric_level, 2)

    # Chatty third-party loggers
    for name in ("numba", "matplotlib", "urllib3", "harmonypy"):
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    return logging.getLogger("blood_integration")
