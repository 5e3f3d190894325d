from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def pytest_configure() -> None:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(autouse=True)
def _market_env(monkeypatch: pytest.MonkeyPatch) -> None:
    # Pin AM_* so a developer's .env cannot change balances or log output under test.
    monkeypatch.delenv("AM_STORE_PATH", raising=False)
    monkeypatch.setenv("AM_STARTING_CREDITS", "100")
    monkeypatch.setenv("AM_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("AM_LOG_JSON", "true")


@pytest.fixture(autouse=True)
def _reset_structlog() -> Iterator[None]:
    # CLI tests call configure_logging(); keep that from leaking into later tests.
    yield
    structlog.reset_defaults()
