from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Callable

import pytest

from orgscan.cache.store import CacheStore
from tests._fixtures.fake_github import NOW, FakeGitHub


class MutableClock:
    """Clock whose time tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def fake_github() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
    path = tmp_path / "caches"
    path.mkdir()
    return path


@pytest.fixture
def store(cache_dir: Path, clock: Callable[[], datetime]) -> CacheStore:
    return CacheStore(str(cache_dir), clock=clock)


@pytest.fixture
def no_sleep() -> Callable[[float], bool]:
    """Sleep replacement that records delays and never reports cancellation."""
    delays = []

    def sleep(seconds: float) -> bool:
        delays.append(seconds)
        return False

    sleep.delays = delays  # type: ignore[attr-defined]
    return sleep
