"""
pytest configuration for tenant export tests.

Adds src directory to Python path for imports.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _clean_log_context():
    """Reset logging context vars around each test."""
    from core.logging.context import clear_log_context

    clear_log_context()
    yield
    clear_log_context()
