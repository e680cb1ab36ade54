"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

TESTS_DIR = Path(__file__).parent
SRC_DIR = TESTS_DIR.parent / "src"


@pytest.fixture(scope="session")
def echo_worker() -> str:
    """Path to the test worker script."""
    return str(TESTS_DIR / "workers" / "echo_worker.py")


@pytest.fixture(scope="session")
def worker_env() -> dict[str, str]:
    """Environment overrides so the worker can import server_harness from source."""
    pythonpath = os.pathsep.join(p for p in (str(SRC_DIR), os.environ.get("PYTHONPATH")) if p)
    return {"PYTHONPATH": pythonpath, "PYTHONUNBUFFERED": "1"}
