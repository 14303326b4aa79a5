"""
Data assimilation diagnostics.

Provides verification metrics for a least-squares analysis:
- Squared error and RMSE against observations
- Innovation statistics (observation minus prediction)
- Background vs analysis comparison
"""

import logging
from typing import Dict

import numpy as np

logger = logging.getLogger(__name__)


def sum_squared_error(observations: np.ndarray, predicted: np.ndarray) -> float:
    """Sum of squared differences between observations and predictions.

    This is the error the refinement controller compares between iterations.
    """
    diff = np.asarray(observations, dtype=np.float64) - np.asarray(predicted, dtype=np.float64)
    return float(np.dot(diff, diff))


def rmse(observations: np.ndarray, predicted: np.ndarray) -> float:
    """Root-mean-square error over the non-NaN observations."""
    obs = np.asarray(observations, dtype=np.float64)
    pred = np.asarray(predicted, dtype=np.float64)
    valid = ~np.isnan(obs) & ~np.isnan(pred)
    if not np.any(valid):
        return np.nan
    return float(np.sqrt(np.mean((obs[valid] - pred[valid]) ** 2)))


def innovation_statistics(
    observations: np.ndarray,
    predicted: np.ndarray,
    num_gauges: int,
) -> Dict[str, np.ndarray]:
    """Per-gauge statistics of the innovations d - q.

    Args:
        observations: Time-major observation vector.
        predicted: Predictions, same shape.
        num_gauges: Number of gauges.

    Returns:
        Dictionary with per-gauge 'mean', 'std' and 'max_abs' innovation.
    """
    innov = (np.asarray(observations, dtype=np.float64)
             - np.asarray(predicted, dtype=np.float64)).reshape(-1, num_gauges)
    return {
        'mean': innov.mean(axis=0),
        'std': innov.std(axis=0),
        'max_abs': np.abs(innov).max(axis=0),
    }


def analysis_comparison(
    background_predictions: np.ndarray,
    analysis_predictions: np.ndarray,
    observations: np.ndarray,
) -> Dict[str, float]:
    """Compare analysis performance against the background (no assimilation).

    Args:
        background_predictions: Predictions from the background state.
        analysis_predictions: Predictions from the analysis state.
        observations: Observations.

    Returns:
        Dictionary with RMSE of both states and the relative improvement (%).
    """
    bg_rmse = rmse(observations, background_predictions)
    an_rmse = rmse(observations, analysis_predictions)

    if np.isnan(bg_rmse) or np.isnan(an_rmse):
        return {'background_rmse': bg_rmse, 'analysis_rmse': an_rmse, 'rmse_improvement': np.nan}

    return {
        'background_rmse': bg_rmse,
        'analysis_rmse': an_rmse,
        'rmse_improvement': float((bg_rmse - an_rmse) / bg_rmse * 100) if bg_rmse > 1e-12 else 0.0,
    }
