# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Outlier mitigation for gauge observations.

An observation whose discrepancy with the model prediction exceeds a
per-gauge limit is replaced by the prediction itself, removing its
influence on the next least-squares pass.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from hydroassim.core.exceptions import ValidationError

logger = logging.getLogger(__name__)


def find_bad_discharge_values(
    observations: np.ndarray,
    predicted: np.ndarray,
    num_gauges: int,
    limit: float = 1.0,
    gauge_scales: Optional[Sequence[float]] = None,
) -> np.ndarray:
    """Flag observations with ``|d - q| > limit * scale[gauge]``.

    Args:
        observations: Time-major observation vector d.
        predicted: Predictions q, same shape as d.
        num_gauges: Number of gauges (entry ``k`` belongs to gauge ``k % num_gauges``).
        limit: Discrepancy limit.
        gauge_scales: Per-gauge scale of the limit (default: ones).

    Returns:
        Boolean mask over the observation vector.
    """
    d = np.asarray(observations, dtype=np.float64)
    q = np.asarray(predicted, dtype=np.float64)
    if d.shape != q.shape:
        raise ValidationError(f"Observations {d.shape} and predictions {q.shape} differ in shape")
    if num_gauges <= 0 or d.shape[0] % num_gauges:
        raise ValidationError(f"{d.shape[0]} observations cannot be split over {num_gauges} gauges")

    scales = np.ones(num_gauges) if gauge_scales is None else np.asarray(gauge_scales, dtype=np.float64)
    if scales.shape != (num_gauges,):
        raise ValidationError(f"Expected {num_gauges} gauge scales, got {scales.shape[0]}")

    limits = limit * np.tile(scales, d.shape[0] // num_gauges)
    return np.abs(d - q) > limits


def reduce_bad_discharge_values(
    observations: np.ndarray,
    predicted: np.ndarray,
    num_gauges: int,
    limit: float = 1.0,
    gauge_scales: Optional[Sequence[float]] = None,
) -> bool:
    """Replace outlying observations, in place, by the model prediction.

    Returns:
        True if any observation was replaced.
    """
    bad = find_bad_discharge_values(observations, predicted, num_gauges, limit, gauge_scales)
    n_bad = int(bad.sum())
    if n_bad == 0:
        return False

    for k in np.flatnonzero(bad):
        step, gauge = divmod(int(k), num_gauges)
        logger.debug(
            f"Gauge {gauge} step {step}: observed {observations[k]:.4g} "
            f"vs predicted {predicted[k]:.4g}, replacing"
        )
    observations[bad] = np.asarray(predicted)[bad]
    logger.warning(f"Replaced {n_bad} of {bad.shape[0]} observations that disagree with the model")
    return True
