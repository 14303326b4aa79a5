"""
Root conftest.py - Session-scoped setup shared across all tests.

This file sets up the Python path so the package can be imported from a
source checkout without installation.
"""

from pathlib import Path
import sys

# Add directories to path BEFORE importing local modules
HYDROASSIM_CODE_DIR = Path(__file__).parent.parent.resolve()
HYDROASSIM_SRC_DIR = HYDROASSIM_CODE_DIR / "src"
if str(HYDROASSIM_SRC_DIR) not in sys.path:
    sys.path.insert(0, str(HYDROASSIM_SRC_DIR))
