"""
Remote file fetching with retry, backoff and a shared rate-limit pause.
"""
import logging
import threading
import time
from typing import Callable, Optional

from ..errors import FetchError, ProviderError, RateLimitError, ScanCancelled, TransientProviderError
from ..models import RepositoryRef
from .cancel import CancelToken

logger = logging.getLogger(__name__)


class RateLimitGate:
    """Pause shared by all workers while the provider's rate limit is exhausted."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._lock = threading.Lock()
        self._resume_at = 0.0

    def suspend_until(self, resume_at: float) -> bool:
        """Close the gate until ``resume_at``. Returns True if this extended the pause."""
        with self._lock:
            if resume_at > self._resume_at:
                self._resume_at = resume_at
                return True
            return False

    @property
    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self._resume_at - self._clock())

    def pass_through(self, sleep: Callable[[float], bool]) -> bool:
        """Block until the gate is open. Returns False if cancelled while waiting."""
        while True:
            delay = self.remaining
            if delay <= 0:
                return True
            if sleep(delay):
                return False


class RemoteContentFetcher:
    """Fetches single files for detectors."""

    def __init__(self, provider, token: Optional[CancelToken] = None, max_attempts: int = 3,
                 backoff_base: float = 1.0, backoff_factor: float = 2.0,
                 gate: Optional[RateLimitGate] = None,
                 sleep: Optional[Callable[[float], bool]] = None,
                 clock: Callable[[], float] = time.time,
                 rate_limit_buffer: float = 1.0):
        """Initialize the fetcher.

        Args:
            provider: Object exposing ``get_file_content(org, repo, path, ref)``
            token: Run cancellation token
            max_attempts: Attempts per file for transient errors
            backoff_base: Delay before the second attempt, in seconds
            backoff_factor: Multiplier applied to the delay after each attempt
            gate: Shared rate-limit gate; one is created if omitted
            sleep: ``sleep(seconds) -> cancelled``; defaults to the token's wait
            clock: Epoch clock used to judge rate-limit reset times
            rate_limit_buffer: Seconds added to the provider's reset time
        """
        self.provider = provider
        self.token = token or CancelToken()
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_factor = backoff_factor
        self.gate = gate or RateLimitGate(clock)
        self._sleep = sleep or self.token.wait
        self._clock = clock
        self.rate_limit_buffer = rate_limit_buffer

    def backoff_delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt."""
        return self.backoff_base * self.backoff_factor ** (attempt - 1)

    def fetch_file(self, repository: RepositoryRef, path: str) -> Optional[str]:
        """Fetch a file from the repository's default branch.

        Returns:
            The file text, or None when the file does not exist

        Raises:
            FetchError: when transient failures outlast the retry budget or the
                provider refuses the request outright
            ScanCancelled: when the run is cancelled while waiting
        """
        attempt = 0
        while True:
            if self.token.cancelled or not self.gate.pass_through(self._sleep):
                raise ScanCancelled(f"Cancelled while fetching {repository.full_name}:{path}")

            try:
                return self.provider.get_file_content(repository.organization, repository.name, path, None)
            except RateLimitError as e:
                if e.reset_at > self._clock():
                    if self.gate.suspend_until(e.reset_at + self.rate_limit_buffer):
                        logger.warning(
                            "Rate limit reached; pausing all fetches until %s",
                            time.ctime(e.reset_at + self.rate_limit_buffer)
                        )
                    continue
                error: ProviderError = e
            except TransientProviderError as e:
                error = e
            except ProviderError as e:
                raise FetchError(path, str(e)) from e

            attempt += 1
            if attempt >= self.max_attempts:
                raise FetchError(path, f"gave up after {attempt} attempts: {error}") from error
            delay = self.backoff_delay(attempt)
            logger.debug("Attempt %d for %s:%s failed (%s); retrying in %.1fs",
                         attempt, repository.full_name, path, error, delay)
            if self._sleep(delay):
                raise ScanCancelled(f"Cancelled while fetching {repository.full_name}:{path}")
