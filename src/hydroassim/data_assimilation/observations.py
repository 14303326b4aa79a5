# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Gauge observations for an assimilation window.

Defines the observation source interface, an in-memory source, and the
retry policy applied to transient download failures. By default the
policy retries indefinitely with a fixed delay.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np

from hydroassim.core.config.models.assimilation_config import ObservationConfig
from hydroassim.core.exceptions import (
    DataAcquisitionError,
    RetryableObservationError,
    RetryExhaustedError,
    require,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssimilationWindow:
    """Time window covered by the observations of one cycle.

    Attributes:
        begin: Start of the window (unix seconds).
        num_steps: Number of observation steps.
        obs_time_step: Time between observations (minutes).
    """
    begin: int
    num_steps: int
    obs_time_step: float

    @property
    def end(self) -> int:
        return self.begin + int(self.num_steps * self.obs_time_step * 60.0)

    @property
    def duration(self) -> float:
        """Length of the window in minutes."""
        return self.num_steps * self.obs_time_step

    @classmethod
    def from_config(cls, begin: int, config: ObservationConfig) -> 'AssimilationWindow':
        return cls(begin=begin, num_steps=config.num_steps, obs_time_step=config.obs_time_step)


class ObservationSource(ABC):
    """Abstract source of gauge discharge observations."""

    @abstractmethod
    def fetch_observations(self, window: AssimilationWindow) -> np.ndarray:
        """Observed discharge for the window.

        Returns:
            Matrix of shape (num_gauges, num_steps).

        Raises:
            RetryableObservationError: On a transient failure.
            DataAcquisitionError: On a permanent failure.
        """
        ...


class ArrayObservationSource(ObservationSource):
    """Observation source backed by an in-memory matrix.

    Args:
        values: Matrix of shape (num_gauges, num_steps).
    """

    def __init__(self, values: np.ndarray):
        self.values = np.atleast_2d(np.asarray(values, dtype=np.float64))

    def fetch_observations(self, window: AssimilationWindow) -> np.ndarray:
        if self.values.shape[1] < window.num_steps:
            raise DataAcquisitionError(
                f"Only {self.values.shape[1]} observation steps available, "
                f"{window.num_steps} requested"
            )
        return self.values[:, :window.num_steps].copy()


class RetryPolicy:
    """Retry policy for transient observation failures.

    Args:
        max_attempts: Attempt cap; None retries indefinitely.
        delay: Base delay between attempts (seconds).
        backoff: Optional function ``(attempt, delay) -> seconds``; the
            default keeps the delay fixed.
        sleep: Sleep function (injectable for tests).
    """

    def __init__(
        self,
        max_attempts: Optional[int] = None,
        delay: float = 5.0,
        backoff: Optional[Callable[[int, float], float]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        require(max_attempts is None or max_attempts >= 1, "max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.backoff = backoff
        self.sleep = sleep

    @classmethod
    def from_config(cls, config: ObservationConfig, **kwargs) -> 'RetryPolicy':
        return cls(max_attempts=config.max_attempts, delay=config.retry_delay, **kwargs)

    @staticmethod
    def exponential(attempt: int, delay: float) -> float:
        """Exponential backoff: ``delay * 2**(attempt - 1)``."""
        return delay * (2 ** (attempt - 1))

    def delay_for(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        if self.backoff is None:
            return self.delay
        return self.backoff(attempt, self.delay)

    def call(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Call ``func`` until it succeeds or the attempt cap is reached.

        Only RetryableObservationError is retried; other errors propagate.

        Raises:
            RetryExhaustedError: When the attempt cap is exhausted.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                return func(*args, **kwargs)
            except RetryableObservationError as e:
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise RetryExhaustedError(
                        f"Observation download failed after {attempt} attempts: {e}"
                    ) from e
                wait = self.delay_for(attempt)
                logger.warning(
                    f"Error downloading observations (attempt {attempt}): {e}. "
                    f"Retrying in {wait:.1f}s..."
                )
                self.sleep(wait)


class RetryingObservationSource(ObservationSource):
    """Wraps an observation source with a retry policy."""

    def __init__(self, source: ObservationSource, policy: Optional[RetryPolicy] = None):
        self.source = source
        self.policy = policy or RetryPolicy()

    def fetch_observations(self, window: AssimilationWindow) -> np.ndarray:
        return self.policy.call(self.source.fetch_observations, window)


def flatten_observations(matrix: np.ndarray) -> np.ndarray:
    """Flatten a (num_gauges, num_steps) matrix time-major.

    Entry ``step * num_gauges + gauge`` of the result is
    ``matrix[gauge, step]``.
    """
    return np.ascontiguousarray(np.atleast_2d(np.asarray(matrix, dtype=np.float64)).T).ravel()
