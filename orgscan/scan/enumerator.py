"""
Lazily lists candidate repositories across organizations.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator, List, Optional, Set, Tuple

from ..cache.store import CacheSnapshot
from ..errors import ProviderError
from ..models import ENUMERATION_PARTITIONS, CacheEntry, ExclusionReason, RepositoryRef

logger = logging.getLogger(__name__)


class RepositoryEnumerator:
    """Yields repositories worth scanning and notes the ones that are not.

    Forks, archived repositories and repositories without a push inside the
    inactivity window are never yielded; they are collected in
    :attr:`observations` for the cache updater. Listing failures of one
    organization are recorded in :attr:`failures` and do not stop the others.
    """

    def __init__(self, provider, snapshot: Optional[CacheSnapshot] = None,
                 inactivity_days: int = 180, limit: Optional[int] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """Initialize the enumerator.

        Args:
            provider: Object exposing ``list_repositories(org, limit)`` and
                ``get_repository(full_name)``
            snapshot: Cache membership taken at the start of the run
            inactivity_days: Repositories not pushed to for this long are abandoned
            limit: Maximum repositories listed per organization
            clock: Returns the current UTC time (tests)
        """
        self.provider = provider
        self.snapshot = snapshot or CacheSnapshot.empty()
        self.inactivity_days = inactivity_days
        self.limit = limit
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.observations: List[CacheEntry] = []
        self.failures: List[Tuple[str, str]] = []
        self.skipped: List[Tuple[str, str]] = []
        self._observed: Set[Tuple[str, ExclusionReason]] = set()
        self._yielded: Set[str] = set()

    @property
    def inactivity_cutoff(self) -> datetime:
        return self._clock() - timedelta(days=self.inactivity_days)

    def _observe(self, repo: RepositoryRef, reason: ExclusionReason) -> None:
        marker = (repo.key, reason)
        if marker in self._observed:
            return
        self._observed.add(marker)
        self.observations.append(CacheEntry(repository=repo.key, reason=reason, recorded_at=self._clock()))

    def _skip(self, repo: RepositoryRef, why: str) -> None:
        logger.debug("Skipping %s: %s", repo.full_name, why)
        self.skipped.append((repo.key, why))

    def _is_abandoned(self, repo: RepositoryRef) -> bool:
        if repo.is_archived:
            return True
        return repo.last_pushed_at is not None and repo.last_pushed_at < self.inactivity_cutoff

    def _accept(self, repo: RepositoryRef, allow: Set[str], block: Set[str]) -> bool:
        """Apply the filters in order and record side observations."""
        if repo.is_fork:
            self._observe(repo, ExclusionReason.FORK)
        if self._is_abandoned(repo):
            self._observe(repo, ExclusionReason.ABANDONED)

        if repo.key in block:
            self._observe(repo, ExclusionReason.BLOCKLISTED)
            self._skip(repo, "blocklisted")
            return False
        if allow and repo.key not in allow:
            self._skip(repo, "not in allow list")
            return False
        partition = self.snapshot.excluding_partition(repo, ENUMERATION_PARTITIONS)
        if partition is not None:
            self._skip(repo, f"cached in {partition}")
            return False
        if repo.is_fork:
            self._skip(repo, "fork")
            return False
        if repo.is_archived:
            self._skip(repo, "archived")
            return False
        if self._is_abandoned(repo):
            self._skip(repo, f"no push in {self.inactivity_days} days")
            return False
        if repo.key in self._yielded:
            return False
        self._yielded.add(repo.key)
        return True

    def list_candidates(self, organizations: Iterable[str], allow_list: Iterable[str] = (),
                        block_list: Iterable[str] = ()) -> Iterator[RepositoryRef]:
        """Yield candidate repositories organization by organization.

        Args:
            organizations: Organization (or user) logins to list
            allow_list: If non-empty, only these ``owner/repo`` keys are yielded
            block_list: ``owner/repo`` keys that are never yielded

        Raises:
            OperationalFailure: on authentication failure
        """
        allow = set(allow_list)
        block = set(block_list)
        for org in organizations:
            logger.info("Listing repositories in %s", org)
            listed = accepted = 0
            try:
                for repo in self.provider.list_repositories(org, limit=self.limit):
                    listed += 1
                    if self._accept(repo, allow, block):
                        accepted += 1
                        yield repo
            except ProviderError as e:
                logger.error("Failed to list repositories for %s after %d: %s", org, listed, e)
                self.failures.append((org, str(e)))
                continue
            logger.info("%s: %d listed, %d candidates", org, listed, accepted)

    def list_individual(self, identifiers: Iterable[str], block_list: Iterable[str] = ()) -> Iterator[RepositoryRef]:
        """Yield individually named repositories that pass the same filters."""
        block = set(block_list)
        for identifier in identifiers:
            try:
                repo = self.provider.get_repository(identifier)
            except ProviderError as e:
                logger.error("Failed to look up %s: %s", identifier, e)
                self.failures.append((identifier, str(e)))
                continue
            if repo is None:
                logger.warning("Repository %s not found, skipping", identifier)
                continue
            if self._accept(repo, set(), block):
                yield repo
