"""
Timing mixin for HydroAssim modules.

Provides timing utilities for the stages of an assimilation cycle.
"""

import logging
import time
from contextlib import contextmanager
from typing import ContextManager, Dict


class TimingMixin:
    """
    Mixin providing timing utilities.

    Requires self.logger to be available. Durations of completed sections
    are kept in ``self.timings`` keyed by task name.
    """

    @contextmanager
    def time_limit(self, task_name: str) -> ContextManager[None]:
        """
        Context manager to time a task and log the duration.
        """
        start_time = time.perf_counter()
        logger = getattr(self, 'logger', logging.getLogger(__name__))
        logger.debug(f"Starting task: {task_name}")
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            self._record_timing(task_name, duration)
            logger.info(f"Completed task: {task_name} in {duration:.2f} seconds")

    def _record_timing(self, task_name: str, duration: float) -> None:
        timings: Dict[str, float] = getattr(self, 'timings', None)
        if timings is None:
            timings = {}
            self.timings = timings
        timings[task_name] = duration
