"""
Unit test fixtures and configuration.

Fixtures specific to unit tests (fast, isolated tests).
"""

from unittest.mock import MagicMock

import pytest

# ============================================================================
# Common Mock Fixtures
# ============================================================================

@pytest.fixture
def mock_config():
    """Create a basic flat configuration for unit tests."""
    return {
        'ASSIM_MODEL': '254_q',
        'LS_MAX_ITERATIONS': 5,
        'ASSIM_NUM_STEPS': 3,
        'OBS_RETRY_DELAY': 0.0,
    }


@pytest.fixture
def mock_logger():
    """Create a mock logger for unit tests."""
    return MagicMock()
