"""
Persistent exclusion caches.

Each partition is a JSON file ``<cache_dir>/<partition>.json``::

    {
        "version": 1,
        "partition": "forks",
        "refreshed_at": "2024-05-01T10:00:00+00:00",
        "modified_at": "2024-05-01T10:05:00+00:00",
        "entries": {"org/repo": {"reason": "fork", "recorded_at": "..."}}
    }

``refreshed_at`` marks the last time the partition was fully re-evaluated
and drives the TTL check; ``modified_at`` is informational.

Writers serialize on ``<cache_dir>/.<partition>.lock`` for the whole
read-merge-replace cycle.
"""
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, FrozenSet, Iterable, Iterator, List, Mapping, Optional, Set, Tuple, Union

from filelock import FileLock, Timeout

from ..errors import CacheCorruptionError, OperationalFailure
from ..models import DEFAULT_PARTITIONS, CacheEntry, ExclusionReason, RepositoryRef, parse_timestamp
from ..repo_names import normalize_repo_identifier

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

# Seconds to wait for another process holding a partition lock
LOCK_TIMEOUT = 60

RepositoryKey = Union[str, RepositoryRef]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _key(repository: RepositoryKey) -> str:
    return repository.key if isinstance(repository, RepositoryRef) else repository


@dataclass
class _Partition:
    name: str
    entries: Dict[str, CacheEntry] = field(default_factory=dict)
    refreshed_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    removed: Set[str] = field(default_factory=set)
    dirty: bool = False
    # Set when the file on disk is corrupt; the next write replaces it instead of merging.
    rebuild: bool = False


class CacheSnapshot:
    """Read-only view of partition membership taken once per run."""

    def __init__(self, members: Mapping[str, FrozenSet[str]], reconsidered: Iterable[str] = ()):
        self._members = dict(members)
        self.reconsidered: FrozenSet[str] = frozenset(reconsidered)

    @classmethod
    def empty(cls) -> "CacheSnapshot":
        return cls({})

    def is_excluded(self, repository: RepositoryKey, partition: Optional[str]) -> bool:
        if partition is None:
            return False
        return _key(repository) in self._members.get(partition, frozenset())

    def excluding_partition(self, repository: RepositoryKey, partitions: Iterable[str]) -> Optional[str]:
        """Return the first of ``partitions`` that lists the repository."""
        for partition in partitions:
            if self.is_excluded(repository, partition):
                return partition
        return None

    def size(self, partition: str) -> int:
        return len(self._members.get(partition, ()))


class CacheStore:
    """Manages the exclusion partitions on disk.

    Thread-safe within a process. Across processes, writes hold a file lock
    per partition while they merge with the file on disk by union and
    replace it atomically.
    """

    def __init__(self, cache_dir: str, clock: Optional[Callable[[], datetime]] = None,
                 lock_timeout: float = LOCK_TIMEOUT):
        """Initialize the cache store.

        Args:
            cache_dir: Directory holding the partition files
            clock: Returns the current UTC time (tests)
            lock_timeout: Seconds to wait for a partition lock held elsewhere
        """
        self.cache_dir = cache_dir
        self.lock_timeout = lock_timeout
        self._clock = clock or _utcnow
        self._lock = threading.RLock()
        self._partitions: Dict[str, _Partition] = {}

    def ensure_directory(self) -> None:
        """Create the cache directory, failing the run if it is unusable."""
        try:
            os.makedirs(self.cache_dir, exist_ok=True)
        except OSError as e:
            raise OperationalFailure(f"Cannot create cache directory {self.cache_dir}: {e}") from e
        if not os.access(self.cache_dir, os.R_OK | os.W_OK):
            raise OperationalFailure(f"Cache directory {self.cache_dir} is not readable and writable")

    def _path(self, partition: str) -> str:
        return os.path.join(self.cache_dir, f"{partition}.json")

    def _legacy_path(self, partition: str) -> str:
        return os.path.join(self.cache_dir, f"{partition}.txt")

    def _lock_path(self, partition: str) -> str:
        return os.path.join(self.cache_dir, f".{partition}.lock")

    @contextmanager
    def _file_lock(self, partition: str) -> Iterator[None]:
        """Hold the cross-process lock of a partition.

        Raises:
            OperationalFailure: if another process keeps the lock past ``lock_timeout``
        """
        lock = FileLock(self._lock_path(partition), timeout=self.lock_timeout)
        try:
            lock.acquire()
        except Timeout as e:
            raise OperationalFailure(
                f"Timed out after {self.lock_timeout}s waiting for {self._lock_path(partition)}"
            ) from e
        try:
            yield
        finally:
            lock.release()

    # Loading

    def _read_file(self, partition: str) -> Tuple[Dict[str, CacheEntry], Optional[datetime], Optional[datetime]]:
        """Read a partition file.

        Raises:
            CacheCorruptionError: if the file exists but cannot be understood
        """
        path = self._path(partition)
        if not os.path.exists(path):
            return self._read_legacy(partition)

        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CacheCorruptionError(f"{path}: {e}") from e

        if not isinstance(data, dict) or data.get('version') != FORMAT_VERSION:
            raise CacheCorruptionError(f"{path}: unsupported format")
        raw_entries = data.get('entries')
        if not isinstance(raw_entries, dict):
            raise CacheCorruptionError(f"{path}: 'entries' is not a mapping")

        entries: Dict[str, CacheEntry] = {}
        try:
            for key, raw in raw_entries.items():
                recorded_at = _aware_timestamp(raw['recorded_at'])
                if recorded_at is None:
                    raise ValueError(f"{key} has no recorded_at")
                entries[key] = CacheEntry(
                    repository=key,
                    reason=ExclusionReason(raw['reason']),
                    recorded_at=recorded_at,
                )
            refreshed_at = _aware_timestamp(data.get('refreshed_at'))
            modified_at = _aware_timestamp(data.get('modified_at'))
        except (KeyError, TypeError, ValueError) as e:
            raise CacheCorruptionError(f"{path}: malformed entry ({e})") from e
        return entries, refreshed_at, modified_at

    def _read_legacy(self, partition: str) -> Tuple[Dict[str, CacheEntry], Optional[datetime], Optional[datetime]]:
        """Import a line-per-repository ``.txt`` cache left by older tooling.

        Raises:
            CacheCorruptionError: if the file cannot be read as text
        """
        path = self._legacy_path(partition)
        if not os.path.exists(path):
            return {}, None, None

        reason = _reason_for_partition(partition)
        entries = {}
        try:
            mtime = datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc)
            with open(path, 'r', encoding='utf-8') as f:
                for line in f:
                    key = normalize_repo_identifier(line)
                    if key:
                        entries[key] = CacheEntry(repository=key, reason=reason, recorded_at=mtime)
        except (OSError, UnicodeDecodeError) as e:
            raise CacheCorruptionError(f"{path}: {e}") from e
        logger.info("Imported %d entries for partition %s from %s", len(entries), partition, path)
        return entries, mtime, mtime

    def _partition(self, name: str) -> _Partition:
        with self._lock:
            part = self._partitions.get(name)
            if part is not None:
                return part
            try:
                entries, refreshed_at, modified_at = self._read_file(name)
                part = _Partition(name, entries, refreshed_at, modified_at)
            except CacheCorruptionError as e:
                logger.warning("Cache partition %s is corrupt (%s); treating it as empty and rebuilding", name, e)
                part = _Partition(name, dirty=True, rebuild=True)
            self._partitions[name] = part
            return part

    # Queries

    def is_excluded(self, repository: RepositoryKey, partition: str) -> bool:
        return _key(repository) in self._partition(partition).entries

    def entries(self, partition: str) -> Dict[str, CacheEntry]:
        with self._lock:
            return dict(self._partition(partition).entries)

    def partition_age(self, partition: str) -> Optional[timedelta]:
        """Time since the partition was last fully refreshed, or None if never written."""
        refreshed_at = self._partition(partition).refreshed_at
        if refreshed_at is None:
            return None
        return self._clock() - refreshed_at

    def is_fresh(self, partition: str, max_age: timedelta) -> bool:
        if max_age <= timedelta(0):
            return False
        age = self.partition_age(partition)
        return age is not None and age <= max_age

    def snapshot(self, partitions: Iterable[str], max_age: timedelta) -> CacheSnapshot:
        """Take the membership view used for one run.

        Partitions older than ``max_age`` (or never written) are left out so
        their repositories are reconsidered.
        """
        members: Dict[str, FrozenSet[str]] = {}
        reconsidered: List[str] = []
        with self._lock:
            for partition in partitions:
                if self.is_fresh(partition, max_age):
                    members[partition] = frozenset(self._partition(partition).entries)
                else:
                    age = self.partition_age(partition)
                    logger.info(
                        "Cache partition %s is %s; its repositories will be reconsidered",
                        partition, "empty" if age is None else f"stale ({age})"
                    )
                    reconsidered.append(partition)
        return CacheSnapshot(members, reconsidered)

    # Mutations

    def record_exclusion(self, repository: RepositoryKey, reason: ExclusionReason,
                         partition: Optional[str] = None, recorded_at: Optional[datetime] = None) -> None:
        """Insert or refresh a repository's membership of a partition."""
        key = _key(repository)
        name = partition or DEFAULT_PARTITIONS[reason]
        now = self._clock()
        with self._lock:
            part = self._partition(name)
            part.entries[key] = CacheEntry(repository=key, reason=reason, recorded_at=recorded_at or now)
            part.removed.discard(key)
            if part.refreshed_at is None:
                part.refreshed_at = now
            part.modified_at = now
            part.dirty = True

    def prune_older_than(self, partition: str, cutoff: datetime,
                         organizations: Optional[Iterable[str]] = None) -> List[str]:
        """Drop entries recorded before ``cutoff``. Returns the removed keys.

        Args:
            partition: Partition to prune
            cutoff: Entries recorded before this instant expire
            organizations: Only prune repositories owned by these organizations
        """
        owners = None if organizations is None else {org.lower() for org in organizations}
        with self._lock:
            part = self._partition(partition)
            expired = sorted(
                k for k, entry in part.entries.items()
                if entry.recorded_at < cutoff and (owners is None or _owner(k) in owners)
            )
            for key in expired:
                del part.entries[key]
                part.removed.add(key)
            if expired:
                part.modified_at = self._clock()
                part.dirty = True
            return expired

    def mark_refreshed(self, partition: str, at: Optional[datetime] = None) -> None:
        with self._lock:
            part = self._partition(partition)
            part.refreshed_at = at or self._clock()
            part.dirty = True

    def clear(self, partition: str) -> None:
        """Remove a partition's contents and its file."""
        with self._lock:
            self._partitions[partition] = _Partition(partition)
            if not os.path.isdir(self.cache_dir):
                return
            with self._file_lock(partition):
                for path in (self._path(partition), self._legacy_path(partition)):
                    if os.path.exists(path):
                        os.remove(path)
            lock_path = self._lock_path(partition)
            if os.path.exists(lock_path):
                os.remove(lock_path)
            logger.info("Cleared cache partition %s", partition)

    def clear_all(self) -> List[str]:
        """Clear every partition found on disk or loaded in memory."""
        names = set(self._partitions)
        if os.path.isdir(self.cache_dir):
            for filename in os.listdir(self.cache_dir):
                base, ext = os.path.splitext(filename)
                if ext in ('.json', '.txt'):
                    names.add(base)
        for name in sorted(names):
            self.clear(name)
        return sorted(names)

    # Persistence

    def persist(self) -> List[str]:
        """Write every dirty partition. Returns the names written."""
        written = []
        with self._lock:
            for name, part in sorted(self._partitions.items()):
                if part.dirty:
                    self._write(part)
                    written.append(name)
        return written

    def _write(self, part: _Partition) -> None:
        os.makedirs(self.cache_dir, exist_ok=True)
        with self._file_lock(part.name):
            self._merge_and_replace(part)

    def _merge_and_replace(self, part: _Partition) -> None:
        merged: Dict[str, CacheEntry] = {}
        refreshed_at = part.refreshed_at
        if not part.rebuild:
            try:
                disk_entries, disk_refreshed, _ = self._read_file(part.name)
            except CacheCorruptionError as e:
                logger.warning("Overwriting corrupt cache partition %s: %s", part.name, e)
                disk_entries, disk_refreshed = {}, None
            merged = {k: v for k, v in disk_entries.items() if k not in part.removed}
            if disk_refreshed and (refreshed_at is None or disk_refreshed > refreshed_at):
                refreshed_at = disk_refreshed

        for key, entry in part.entries.items():
            existing = merged.get(key)
            if existing is None or existing.recorded_at <= entry.recorded_at:
                merged[key] = entry

        modified_at = part.modified_at or self._clock()
        payload = {
            'version': FORMAT_VERSION,
            'partition': part.name,
            'refreshed_at': refreshed_at.isoformat() if refreshed_at else None,
            'modified_at': modified_at.isoformat(),
            'entries': {
                key: {'reason': entry.reason.value, 'recorded_at': entry.recorded_at.isoformat()}
                for key, entry in sorted(merged.items())
            },
        }

        fd, tmp_path = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{part.name}.", suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2)
                f.write('\n')
            os.replace(tmp_path, self._path(part.name))
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        part.entries = merged
        part.refreshed_at = refreshed_at
        part.modified_at = modified_at
        part.removed.clear()
        part.dirty = False
        part.rebuild = False
        logger.debug("Wrote %d entries to cache partition %s", len(merged), part.name)


def _owner(key: str) -> str:
    return key.partition('/')[0].lower()


def _aware_timestamp(value) -> Optional[datetime]:
    """Parse a stored timestamp; anything but a timezone-aware ISO string is malformed."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"timestamp {value!r} is not a string")
    parsed = parse_timestamp(value)
    if parsed is None or parsed.tzinfo is None:
        raise ValueError(f"timestamp {value!r} has no timezone")
    return parsed


def _reason_for_partition(partition: str) -> ExclusionReason:
    for reason, name in DEFAULT_PARTITIONS.items():
        if name == partition:
            return reason
    return ExclusionReason.NO_MANIFEST
