"""
One end-to-end scan run: enumerate, scan, report, reconcile, update caches.
"""
import itertools
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from ..cache.store import CacheStore
from ..cache.updater import CacheUpdater
from ..detectors.base import Detector
from ..models import ENUMERATION_PARTITIONS, ReconciliationPlan, ScanReport
from ..repo_names import read_repo_list
from ..reports.generator import ReportGenerator
from ..tracking.github_issues import GitHubIssueTracker
from ..tracking.reconciler import reconcile
from .aggregator import ScanAggregator
from .cancel import CancelToken
from .enumerator import RepositoryEnumerator
from .fetcher import RemoteContentFetcher

logger = logging.getLogger(__name__)


@dataclass
class RunOptions:
    """Per-run switches, mostly from the command line."""
    organizations: List[str]
    clear_cache: bool = False
    force: bool = False
    tracking: bool = True
    create_issues: bool = False
    max_workers: int = 4
    cache_ttl: timedelta = timedelta(hours=6)
    inactivity_days: int = 180
    repo_limit: Optional[int] = None
    lists_dir: Optional[str] = None
    fetch_max_attempts: int = 3
    fetch_backoff_base: float = 1.0
    fetch_backoff_factor: float = 2.0


@dataclass
class RunResult:
    """What a run produced."""
    report: ScanReport
    report_paths: Dict[str, str] = field(default_factory=dict)
    plans: Dict[str, ReconciliationPlan] = field(default_factory=dict)
    caches_updated: bool = False


def list_file(lists_dir: Optional[str], detector_id: str, kind: str) -> List[str]:
    """Read ``<lists_dir>/<detector>-<kind>.txt`` (kind: repo-list, blocklist, allowlist)."""
    if not lists_dir:
        return []
    return read_repo_list(os.path.join(lists_dir, f"{detector_id}-{kind}.txt"))


class ScanRunner:
    """Wires the pipeline components together for one run."""

    def __init__(self, provider, store: CacheStore, report_generator: ReportGenerator,
                 tracker: Optional[GitHubIssueTracker] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """Initialize the runner.

        Args:
            provider: Repository provider (GitHubAPI or a test double)
            store: Cache store
            report_generator: Writes the report artifacts
            tracker: Tracking-issue provider; None disables tracking
            clock: Returns the current UTC time (tests)
        """
        self.provider = provider
        self.store = store
        self.report_generator = report_generator
        self.tracker = tracker
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _lists(self, options: RunOptions, detectors: Sequence[Detector]):
        """Union of the per-detector list files."""
        individual: List[str] = []
        allow: List[str] = []
        block: List[str] = []
        for detector in detectors:
            individual += list_file(options.lists_dir, detector.detector_id, 'repo-list')
            allow += list_file(options.lists_dir, detector.detector_id, 'allowlist')
            block += list_file(options.lists_dir, detector.detector_id, 'blocklist')
        return list(dict.fromkeys(individual)), allow, block

    def run(self, detectors: Sequence[Detector], options: RunOptions,
            token: Optional[CancelToken] = None) -> RunResult:
        """Execute a full run.

        Raises:
            OperationalFailure: before any write, if credentials or the cache
                directory are unusable
        """
        token = token or CancelToken()
        started_at = self._clock()

        self.provider.validate_token()
        self.store.ensure_directory()
        if options.clear_cache:
            cleared = self.store.clear_all()
            logger.info("Cleared %d cache partitions", len(cleared))

        manifest_partitions = {d.detector_id: d.no_manifest_partition for d in detectors}
        partitions = list(ENUMERATION_PARTITIONS) + sorted({p for p in manifest_partitions.values() if p})
        max_age = timedelta(0) if options.force else options.cache_ttl
        snapshot = self.store.snapshot(partitions, max_age)

        individual, allow, block = self._lists(options, detectors)
        if block:
            logger.info("Blocklist: %d repositories", len(block))

        enumerator = RepositoryEnumerator(
            self.provider, snapshot,
            inactivity_days=options.inactivity_days,
            limit=options.repo_limit,
            clock=self._clock,
        )
        candidates = itertools.chain(
            enumerator.list_candidates(options.organizations, allow, block),
            enumerator.list_individual(individual, block),
        )

        fetcher = RemoteContentFetcher(
            self.provider, token,
            max_attempts=options.fetch_max_attempts,
            backoff_base=options.fetch_backoff_base,
            backoff_factor=options.fetch_backoff_factor,
        )
        aggregator = ScanAggregator(fetcher, snapshot, max_workers=options.max_workers, clock=self._clock)
        report = aggregator.run(candidates, detectors, token=token, concurrency=options.max_workers)
        report.organizations = list(options.organizations)
        report.observations = list(enumerator.observations)
        report.enumeration_failures = list(enumerator.failures)

        result = RunResult(report=report)
        paths = self.report_generator.generate(report, detectors)
        result.report_paths = {fmt.value: path for fmt, path in paths.items()}
        log_summary(report)

        if report.incomplete:
            logger.warning("Report is incomplete; skipping tracking issues and cache updates")
            return result

        if options.tracking and self.tracker is not None:
            for detector in detectors:
                result.plans[detector.detector_id] = self._reconcile(detector, report, options)

        CacheUpdater(self.store, manifest_partitions).apply_report(
            report, reconsidered=snapshot.reconsidered, run_started_at=started_at
        )
        result.caches_updated = True
        return result

    def _reconcile(self, detector: Detector, report: ScanReport, options: RunOptions) -> ReconciliationPlan:
        title = detector.tracking_issue_title
        prior = self.tracker.read_issue_state(title)
        plan = reconcile(report, prior, detector.detector_id)
        logger.info("%s: %d to add, %d to remove, %d unchanged", title,
                    len(plan.to_add), len(plan.to_remove), len(plan.unchanged))
        if plan.is_empty and prior.exists:
            logger.info("Tracking issue #%d is already up to date", prior.issue_number)
            return plan

        state = self.tracker.apply_plan(title, prior, plan, report, detector)
        if state.issue_number is not None and not plan.is_empty:
            date_key = f"{detector.detector_id}:{self._clock().strftime('%Y-%m-%d')}"
            self.tracker.create_or_update_comment(
                state.issue_number, date_key, self.tracker.renderer.daily_comment(detector, plan, report)
            )
        if options.create_issues:
            counts = self.tracker.sync_repository_issues(plan, detector)
            logger.info("Repository issues for %s: %s", detector.detector_id, counts)
        return plan


def log_summary(report: ScanReport) -> None:
    """Log totals and the non-fatal error summary."""
    logger.info("=" * 60)
    logger.info("Scan summary: %d repositories evaluated across %d organizations",
                len(report.repositories), len(report.organizations))
    for detector_id in report.detector_ids:
        verdicts = report.count_by_verdict(detector_id)
        severities = ", ".join(f"{k}={v}" for k, v in report.count_by_severity(detector_id).items() if v)
        logger.info("  %s: %d non-compliant (%s), %d compliant, %d unknown", detector_id,
                    verdicts['non-compliant'], severities or "none", verdicts['compliant'], verdicts['unknown'])
    if report.failures or report.enumeration_failures or report.unevaluated:
        logger.warning("Could not evaluate:")
        for failure in report.failures:
            logger.warning("  %s: %s", failure.repository.full_name, failure.reason)
        for org, reason in report.enumeration_failures:
            logger.warning("  %s (listing): %s", org, reason)
        if report.unevaluated:
            logger.warning("  %d repositories abandoned by cancellation", len(report.unevaluated))
    logger.info("=" * 60)
