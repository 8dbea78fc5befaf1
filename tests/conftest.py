"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the service loads config at import time.
os.environ.setdefault("PROXY_AUTH_TOKEN", "test-token")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_COLOR", "false")
os.environ.setdefault("LOG_PATH", "/tmp/notion_bridge_test.log")
os.environ.setdefault("NOTION_TIMEZONE", "UTC")

from tests.notion_fakes import make_config  # noqa: E402


@pytest.fixture
def test_config():
    """Configuration with a short first-byte window."""
    return make_config(first_byte_timeout_s=2.0)

