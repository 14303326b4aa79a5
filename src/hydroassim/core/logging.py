# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Logging setup for HydroAssim runs.

Every worker logs through the standard library; only the coordinator
emits progress messages so a run prints each message once.
"""

import logging
from typing import Optional

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [rank %(rank)s] [%(name)s] - %(message)s'

# Silence noisy libraries
NOISY_LOGGERS = ('matplotlib', 'urllib3', 'h5py', 'netCDF4')


class RankFilter(logging.Filter):
    """Stamp every record with the worker rank."""

    def __init__(self, rank: int):
        super().__init__()
        self.rank = rank

    def filter(self, record: logging.LogRecord) -> bool:
        record.rank = self.rank
        return True


def configure_logging(
    level: int = logging.INFO,
    rank: int = 0,
    coordinator_rank: int = 0,
    logger_name: str = 'hydroassim',
) -> logging.Logger:
    """Configure the package logger for one worker.

    Non-coordinator workers are raised to WARNING so that progress
    messages are printed once per run.

    Args:
        level: Log level for the coordinator.
        rank: This worker's rank.
        coordinator_rank: Rank of the coordinating worker.
        logger_name: Root logger of the package.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(logger_name)
    for handler in list(logger.handlers):
        if getattr(handler, '_hydroassim_handler', False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler._hydroassim_handler = True
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RankFilter(rank))
    logger.addHandler(handler)

    logger.setLevel(level if rank == coordinator_rank else max(level, logging.WARNING))
    logger.propagate = False

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Return a logger below the package namespace."""
    if not name:
        return logging.getLogger('hydroassim')
    if name.startswith('hydroassim'):
        return logging.getLogger(name)
    return logging.getLogger(f'hydroassim.{name}')
