"""
Folds a finished scan report back into the exclusion caches.
"""
import logging
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from ..errors import IncompleteReportError
from ..models import MANIFEST_ABSENT, ENUMERATION_PARTITIONS, ExclusionReason, ScanReport
from .store import CacheStore

logger = logging.getLogger(__name__)


class CacheUpdater:
    """Applies a report's observations to the cache store as the last step of a run."""

    def __init__(self, store: CacheStore, manifest_partitions: Mapping[str, Optional[str]]):
        """Initialize the updater.

        Args:
            store: Cache store to write to
            manifest_partitions: detector id -> partition recording repositories
                without that detector's manifest
        """
        self.store = store
        self.manifest_partitions = dict(manifest_partitions)

    @property
    def managed_partitions(self) -> Iterable[str]:
        names = set(ENUMERATION_PARTITIONS)
        names.update(p for p in self.manifest_partitions.values() if p)
        return sorted(names)

    def apply_report(self, report: ScanReport, reconsidered: Iterable[str] = (),
                     run_started_at: Optional[datetime] = None, persist: bool = True) -> CacheStore:
        """Record the report's exclusions and expire stale entries.

        Args:
            report: Complete report of the run
            reconsidered: Partitions that were stale at snapshot time and were
                fully re-evaluated by this run
            run_started_at: Entries of reconsidered partitions recorded before
                this instant were not rediscovered and are pruned, for the
                organizations this run listed successfully
            persist: Write the partitions to disk

        Raises:
            IncompleteReportError: if the report was cut short
        """
        if report.incomplete:
            raise IncompleteReportError("Refusing to update caches from an incomplete report")

        before: Dict[str, int] = {name: len(self.store.entries(name)) for name in self.managed_partitions}

        for entry in report.observations:
            self.store.record_exclusion(entry.repository, entry.reason, recorded_at=entry.recorded_at)

        for finding in report.findings:
            if not finding.is_manifest_absent:
                continue
            partition = self.manifest_partitions.get(finding.detector_id)
            if partition:
                self.store.record_exclusion(finding.repository, ExclusionReason.NO_MANIFEST,
                                            partition=partition, recorded_at=finding.discovered_at)

        for failure in report.failures:
            if failure.reason != MANIFEST_ABSENT:
                continue
            for detector_id in failure.detector_ids:
                partition = self.manifest_partitions.get(detector_id)
                if partition:
                    self.store.record_exclusion(failure.repository, ExclusionReason.NO_MANIFEST,
                                                partition=partition)

        cutoff = run_started_at or report.started_at
        managed = set(self.managed_partitions)
        # Only organizations listed in full had their repositories re-evaluated
        unlisted = {org.lower() for org, _ in report.enumeration_failures}
        listed = [org for org in report.organizations if org.lower() not in unlisted]
        for partition in sorted(set(reconsidered) & managed):
            if cutoff is None:
                break
            expired = self.store.prune_older_than(partition, cutoff, organizations=listed)
            if expired:
                logger.info("Expired %d entries from cache partition %s", len(expired), partition)
            self.store.mark_refreshed(partition, cutoff)

        for name in sorted(managed):
            after = len(self.store.entries(name))
            if after != before.get(name, 0):
                logger.info("Cache %s: %d -> %d entries", name, before.get(name, 0), after)

        if persist:
            written = self.store.persist()
            logger.debug("Persisted cache partitions: %s", ", ".join(written) or "none")
        return self.store
