"""
Pytest configuration and fixtures for usage-collector.

Provides cross-platform event loop configuration and settings factories.
"""

import asyncio
import os
import sys

import pytest

from usage_collector.config import CollectorSettings

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


@pytest.fixture
def api_host():
    return "http://ingest.test"


@pytest.fixture
def make_settings(api_host, tmp_path, monkeypatch):
    """Build settings isolated from the real environment and .env files."""
    for var in list(os.environ):
        if var.upper().startswith("COLLECTOR_"):
            monkeypatch.delenv(var, raising=False)

    def _make(**overrides) -> CollectorSettings:
        values = {
            "api_host": api_host,
            "api_key": "test-key",
            "batch_count": 10,
            "batch_period": 0.1,
            "max_in_flight": 2,
            "max_attempts": 3,
            "backoff_base": 0.001,
            "backoff_max": 0.01,
            "request_timeout": 1.0,
            "drain_timeout": 2.0,
            "dead_letter_target": str(tmp_path / "dlq.ndjson"),
        }
        values.update(overrides)
        return CollectorSettings(_env_file=None, **values)

    return _make
