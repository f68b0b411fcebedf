from __future__ import annotations

import pytest

from orgscan.errors import FetchError, ProviderError, RateLimitError, ScanCancelled, TransientProviderError
from orgscan.scan.cancel import CancelToken
from orgscan.scan.fetcher import RateLimitGate, RemoteContentFetcher
from tests._fixtures.fake_github import FakeGitHub, make_repo

REPO = make_repo("acme/service")


class FakeTime:
    """Epoch clock that only moves when something sleeps on it."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now
        self.delays = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> bool:
        self.delays.append(seconds)
        self.now += seconds
        return False


def _fetcher(provider, fake_time: FakeTime, **kwargs) -> RemoteContentFetcher:
    return RemoteContentFetcher(provider, sleep=fake_time.sleep, clock=fake_time, **kwargs)


def test_returns_content_and_none_for_absent_files() -> None:
    provider = FakeGitHub(files={("acme/service", "go.mod"): "module acme\n"})
    fetcher = _fetcher(provider, FakeTime())

    assert fetcher.fetch_file(REPO, "go.mod") == "module acme\n"
    assert fetcher.fetch_file(REPO, "Dockerfile") is None


def test_transient_errors_back_off_then_give_up() -> None:
    provider = FakeGitHub(files={("acme/service", "go.mod"): TransientProviderError("502", status_code=502)})
    fake_time = FakeTime()
    fetcher = _fetcher(provider, fake_time, max_attempts=3, backoff_base=1.0, backoff_factor=2.0)

    with pytest.raises(FetchError) as excinfo:
        fetcher.fetch_file(REPO, "go.mod")

    assert fake_time.delays == [1.0, 2.0]
    assert len(provider.file_calls) == 3
    assert excinfo.value.path == "go.mod"
    assert "gave up after 3 attempts" in excinfo.value.reason


def test_transient_error_then_success() -> None:
    provider = FakeGitHub(files={("acme/service", "go.mod"): [
        TransientProviderError("timeout"),
        "module acme\n",
    ]})
    fake_time = FakeTime()

    assert _fetcher(provider, fake_time).fetch_file(REPO, "go.mod") == "module acme\n"
    assert fake_time.delays == [1.0]


def test_permanent_provider_error_is_not_retried() -> None:
    provider = FakeGitHub(files={("acme/service", "go.mod"): ProviderError("forbidden", status_code=403)})
    fake_time = FakeTime()

    with pytest.raises(FetchError):
        _fetcher(provider, fake_time).fetch_file(REPO, "go.mod")
    assert len(provider.file_calls) == 1
    assert fake_time.delays == []


def test_rate_limit_pauses_without_consuming_attempts() -> None:
    fake_time = FakeTime(now=1_000.0)
    provider = FakeGitHub(files={("acme/service", "go.mod"): [
        RateLimitError("limit", reset_at=1_060.0),
        RateLimitError("limit", reset_at=1_120.0),
        "module acme\n",
    ]})
    fetcher = _fetcher(provider, fake_time, max_attempts=1, rate_limit_buffer=1.0)

    assert fetcher.fetch_file(REPO, "go.mod") == "module acme\n"
    assert fake_time.delays == [pytest.approx(61.0), pytest.approx(60.0)]
    assert len(provider.file_calls) == 3


def test_rate_limit_gate_is_shared() -> None:
    fake_time = FakeTime(now=0.0)
    gate = RateLimitGate(clock=fake_time)

    assert gate.suspend_until(30.0)
    assert not gate.suspend_until(10.0)
    assert gate.remaining == 30.0
    assert gate.pass_through(fake_time.sleep)
    assert gate.remaining == 0.0


def test_backoff_delay_grows_geometrically() -> None:
    fetcher = RemoteContentFetcher(FakeGitHub(), backoff_base=0.5, backoff_factor=3.0)
    assert [fetcher.backoff_delay(n) for n in (1, 2, 3)] == [0.5, 1.5, 4.5]


def test_cancelled_token_stops_fetching() -> None:
    token = CancelToken()
    token.cancel("interrupted")
    provider = FakeGitHub(files={("acme/service", "go.mod"): "module acme\n"})

    with pytest.raises(ScanCancelled):
        RemoteContentFetcher(provider, token=token).fetch_file(REPO, "go.mod")
    assert provider.file_calls == []


def test_cancellation_interrupts_backoff() -> None:
    provider = FakeGitHub(files={("acme/service", "go.mod"): TransientProviderError("502")})

    def cancelled_sleep(seconds: float) -> bool:
        return True

    fetcher = RemoteContentFetcher(provider, sleep=cancelled_sleep)
    with pytest.raises(ScanCancelled):
        fetcher.fetch_file(REPO, "go.mod")
    assert len(provider.file_calls) == 1


def test_deadline_cancels_token() -> None:
    ticks = iter([0.0, 5.0, 11.0])
    token = CancelToken(deadline_seconds=10, clock=lambda: next(ticks))

    assert not token.cancelled
    assert token.cancelled
    assert token.reason == "deadline reached"
