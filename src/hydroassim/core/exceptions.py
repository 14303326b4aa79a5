# SPDX-License-Identifier: GPL-3.0-or-later
# Copyright (C) 2024-2026 SYMFLUENCE Team <dev@symfluence.org>

"""
Custom exception hierarchy for HydroAssim.

This module defines a hierarchy of exceptions that provide clear, specific
error types for the failure modes of an assimilation cycle.
"""

import logging
from contextlib import contextmanager
from typing import Optional, TypeVar


class HydroAssimError(Exception):
    """
    Base exception for all HydroAssim-specific errors.

    All custom exceptions in HydroAssim inherit from this class, so every
    package error can be caught with a single except clause.
    """
    pass


class ConfigurationError(HydroAssimError):
    """
    Configuration-related errors.

    Raised when:
    - Configuration values are invalid
    - An unknown model variant or solver backend is requested
    - Configuration file cannot be loaded or parsed
    """
    pass


class ValidationError(HydroAssimError):
    """
    Data or parameter validation failures.

    Raised when:
    - Gauge locations fall outside the network
    - Vector or matrix shapes are inconsistent
    - The river network contains a cycle
    """
    pass


class DataAcquisitionError(HydroAssimError):
    """
    Observation retrieval failures.

    Raised when:
    - Gauge observations cannot be retrieved
    - The observation source returns malformed data
    """
    pass


class RetryableObservationError(DataAcquisitionError):
    """
    Transient observation retrieval failure.

    The observation source raises this when a later attempt may succeed
    (service unavailable, connection reset). Only this error is retried.
    """
    pass


class RetryExhaustedError(DataAcquisitionError):
    """
    All retry attempts have been exhausted.

    Raised when:
    - A retry policy with an attempt cap has used all of its attempts
    """
    pass


class CommunicationError(HydroAssimError):
    """
    Collective communication failures.

    Raised when:
    - A reduction or broadcast across workers fails
    - Workers disagree on buffer sizes

    Fatal for the whole run; the manager aborts all workers.
    """
    pass


class AssimilationError(HydroAssimError):
    """
    Failures of an assimilation cycle.

    Raised when:
    - The reduced problem is empty
    - Observations and the forward model disagree in size
    """
    pass


class LinearSolveError(AssimilationError):
    """
    Failure of the linear-solve backend.

    Attributes:
        kind: 'singular', 'non_convergent' or 'breakdown'.
    """

    def __init__(self, message: str, kind: str = 'breakdown'):
        super().__init__(message)
        self.kind = kind


class SingularSystemError(LinearSolveError):
    """The normal matrix could not be factorised."""

    def __init__(self, message: str):
        super().__init__(message, kind='singular')


class NonConvergentSolveError(LinearSolveError):
    """An iterative backend did not reach its tolerance."""

    def __init__(self, message: str, iterations: Optional[int] = None):
        super().__init__(message, kind='non_convergent')
        self.iterations = iterations


# =============================================================================
# Validation Helpers
# =============================================================================

T = TypeVar('T')


def require(condition: bool, message: str, error_type: type = None) -> None:
    """
    Validate a condition, raising an exception if it fails.

    This replaces assert statements with proper validation that cannot be
    disabled with python -O.

    Args:
        condition: The condition that must be True
        message: Error message if condition is False
        error_type: Exception type to raise (default: ValidationError)

    Raises:
        ValidationError (or specified error_type) if condition is False

    Example:
        >>> require(shift.reduced_dim > 0, "Nothing to assimilate", AssimilationError)
    """
    if error_type is None:
        error_type = ValidationError
    if not condition:
        raise error_type(message)


def require_not_none(value: Optional[T], name: str, error_type: type = None) -> T:
    """
    Validate that a value is not None, returning it if valid.

    Args:
        value: The value to check
        name: Name of the value (for error message)
        error_type: Exception type to raise (default: ValidationError)

    Returns:
        The value if it is not None

    Raises:
        ValidationError (or specified error_type) if value is None
    """
    if error_type is None:
        error_type = ValidationError
    if value is None:
        raise error_type(f"{name} must not be None")
    return value


@contextmanager
def hydroassim_error_handler(
    operation: str,
    logger: Optional[logging.Logger] = None,
    reraise: bool = True,
    error_type: type = HydroAssimError
):
    """
    Context manager for standardized error handling.

    HydroAssim errors pass through unchanged; any other exception is logged
    and converted to ``error_type``.

    Args:
        operation: Description of the operation being performed (for logging)
        logger: Logger instance for error messages. If None, errors are not logged.
        reraise: Whether to re-raise the exception after handling (default: True)
        error_type: HydroAssim exception type to convert generic exceptions to

    Example:
        >>> with hydroassim_error_handler("background aggregation", logger,
        ...                               error_type=CommunicationError):
        ...     comm.allreduce_sum(buffer)
    """
    try:
        yield
    except HydroAssimError:
        if logger:
            logger.error(f"Error during {operation}", exc_info=True)
        if reraise:
            raise
    except Exception as e:
        if logger:
            logger.error(f"Error during {operation}: {e}", exc_info=True)
        if reraise:
            raise error_type(f"Failed during {operation}: {e}") from e


# =============================================================================
# Public API
# =============================================================================

__all__ = [
    # Base
    'HydroAssimError',
    # Domain exceptions
    'ConfigurationError',
    'ValidationError',
    'DataAcquisitionError',
    'RetryableObservationError',
    'RetryExhaustedError',
    'CommunicationError',
    'AssimilationError',
    'LinearSolveError',
    'SingularSystemError',
    'NonConvergentSolveError',
    # Helpers
    'require',
    'require_not_none',
    'hydroassim_error_handler',
]
