"""
Pytest configuration and shared fixtures.
Run from project root: python -m pytest tests/ -v
"""

import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("LOG_LEVEL", "WARNING")

# Ensure project root is on path when running tests
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture()
def clean_env(monkeypatch):
    """A private copy of os.environ without any Drive settings in it."""
    env = {
        key: value
        for key, value in os.environ.items()
        if not key.startswith(("GOOGLE_DRIVE_", "GOOGLE_OAUTH_"))
    }
    monkeypatch.setattr(os, "environ", env)
    return env
