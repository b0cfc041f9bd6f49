"""Pytest configuration and shared fixtures."""
from __future__ import annotations

from collections.abc import Callable
import threading
from typing import Any

import pytest

from board_tap.errors import SourceUnavailable
from board_tap.publisher import Publisher, Quality
from board_tap.registry import Module, SourceSpec, parse_module


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "linux: mark test as needing a Linux host (real subprocesses)"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as integration test"
    )


class FakeReader:
    """Source reader serving canned output keyed by file path or command line.

    Values may be strings, exceptions (raised) or callables (called).
    Unknown sources raise SourceUnavailable like a missing file would.
    """

    def __init__(self, outputs: dict[str, Any] | None = None) -> None:
        self.outputs = dict(outputs or {})
        self.calls: list[str] = []
        self.cancelled = False
        self._lock = threading.Lock()

    def read(self, source: SourceSpec) -> str:
        key = source.describe()
        with self._lock:
            self.calls.append(key)
        if key not in self.outputs:
            raise SourceUnavailable(f"file not found: {key}")
        value = self.outputs[key]
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value()
        return value

    def cancel_all(self) -> None:
        self.cancelled = True

    def count(self, key: str) -> int:
        with self._lock:
            return self.calls.count(key)


class RecordingPublisher(Publisher):
    """Publisher that keeps every reading in memory."""

    def __init__(self) -> None:
        self.published: list[tuple[str, Any, str, Any, Quality]] = []
        self._lock = threading.Lock()

    def publish(self, name, value, unit, timestamp, quality) -> bool:
        with self._lock:
            self.published.append((name, value, unit, timestamp, quality))
        return True

    def latest(self, name: str) -> tuple[Any, Quality] | None:
        with self._lock:
            for entry in reversed(self.published):
                if entry[0] == name:
                    return entry[1], entry[4]
        return None

    def names(self, quality: Quality | None = None) -> list[str]:
        with self._lock:
            return [e[0] for e in self.published if quality is None or e[4] is quality]


@pytest.fixture
def fake_reader() -> FakeReader:
    """Reader with no canned outputs."""
    return FakeReader()


@pytest.fixture
def recording_publisher() -> RecordingPublisher:
    """In-memory publisher."""
    return RecordingPublisher()


def module_entry(**overrides: Any) -> dict[str, Any]:
    """Minimal valid catalog entry reading a number from one file."""
    entry: dict[str, Any] = {
        "id": "test.value",
        "source": {"file": "/test/value"},
        "pattern": "(?P<value>\\S+)",
        "targets": [{"field": "value", "name": "test.value", "type": "number"}],
    }
    entry.update(overrides)
    return entry


@pytest.fixture
def make_module() -> Callable[..., Module]:
    """Build a module from a catalog entry, filling in defaults."""

    def _make(min_interval_s: float = 0.01, **overrides: Any) -> Module:
        return parse_module(module_entry(**overrides), min_interval_s=min_interval_s)

    return _make
