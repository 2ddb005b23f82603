"""Shared pytest fixtures for all tests."""

from pathlib import Path

import pytest

from common.types import Document
from replica.config import Config


class FakeClock:
    """Manually advanced clock; callable like time.monotonic or now_ms."""

    def __init__(self, start=1_000_000):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, amount):
        self.now += amount
        return self.now


@pytest.fixture
def db_path(tmp_path) -> str:
    """
    Path to a fresh SQLite database file.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Database path as a string
    """
    return str(tmp_path / "docsync.db")


@pytest.fixture
def clock():
    """Millisecond fake clock starting at 1,000,000."""
    return FakeClock()


@pytest.fixture
def seconds_clock():
    """Seconds fake clock for the admission monitor."""
    return FakeClock(start=10_000.0)


@pytest.fixture
def make_doc():
    """
    Factory building documents with sensible defaults.

    Returns:
        Callable(doc_id, updated_at, **fields) -> Document
    """
    def factory(doc_id="doc-1", updated_at=1000, **fields):
        payload = fields.pop("payload", {"title": "hello"})
        return Document(
            id=doc_id,
            updated_at=updated_at,
            created_at=fields.pop("created_at", updated_at),
            payload=payload,
            **fields
        )
    return factory


@pytest.fixture
def temp_config_dir(tmp_path) -> Path:
    """
    Create temporary config directory.

    Returns:
        Path to temporary .docsync directory
    """
    config_dir = tmp_path / '.docsync'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir):
    """
    Create temporary replica config instance.

    Returns:
        Config instance with temp config file
    """
    return Config(temp_config_dir / 'config.json')
