"""
Runs detectors over candidate repositories with a bounded worker pool.
"""
import concurrent.futures
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..cache.store import CacheSnapshot
from ..errors import FetchError, ScanCancelled
from ..models import FetchFailure, RepositoryRef, ScanFinding, ScanReport
from ..detectors.base import Detector
from .cancel import CancelToken
from .fetcher import RemoteContentFetcher

logger = logging.getLogger(__name__)


@dataclass
class RepositoryOutcome:
    """What one worker task produced for one repository."""
    findings: List[ScanFinding] = field(default_factory=list)
    failure: Optional[FetchFailure] = None


class ScanAggregator:
    """Fans repositories out to a thread pool and assembles an ordered report.

    Findings appear in the order the candidates were yielded, whatever order
    the workers finish in, so reports do not depend on the pool size.
    """

    def __init__(self, fetcher: RemoteContentFetcher, snapshot: Optional[CacheSnapshot] = None,
                 max_workers: int = 4, poll_interval: float = 0.5,
                 clock: Optional[Callable[[], datetime]] = None):
        """Initialize the aggregator.

        Args:
            fetcher: Fetcher used by every worker
            snapshot: Cache view used to skip detectors whose manifest is known absent
            max_workers: Default pool size
            poll_interval: Seconds between cancellation checks while waiting on workers
            clock: Returns the current UTC time (tests)
        """
        self.fetcher = fetcher
        self.snapshot = snapshot or CacheSnapshot.empty()
        self.max_workers = max(1, max_workers)
        self.poll_interval = poll_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def scan_repository(self, repository: RepositoryRef, detectors: Sequence[Detector]) -> RepositoryOutcome:
        """Fetch what the detectors need and classify one repository.

        Raises:
            ScanCancelled: if the run is cancelled mid-fetch
        """
        active = []
        for detector in detectors:
            if self.snapshot.is_excluded(repository, detector.no_manifest_partition):
                logger.debug("Skipping %s on %s: no manifest (cached)", detector.detector_id, repository)
                continue
            active.append(detector)
        if not active:
            return RepositoryOutcome()

        contents: Dict[str, Optional[str]] = {}
        errors: Dict[str, FetchError] = {}

        def fetch(paths: Iterable[str]) -> None:
            for path in paths:
                if path in contents or path in errors:
                    continue
                try:
                    contents[path] = self.fetcher.fetch_file(repository, path)
                except FetchError as e:
                    logger.warning("Could not fetch %s from %s: %s", path, repository, e.reason)
                    errors[path] = e

        # Manifests first so inapplicable detectors cost one call each
        for detector in active:
            fetch(detector.manifest_paths)

        outcome = RepositoryOutcome()
        failed_detectors: List[str] = []
        first_error: Optional[FetchError] = None
        now = self._clock()

        for detector in active:
            missing = [p for p in detector.manifest_paths if p in errors]
            if not missing and detector.manifest_absent(contents):
                outcome.findings.append(dataclasses.replace(
                    detector.manifest_absent_finding(repository), discovered_at=now))
                continue

            if not missing:
                fetch(detector.required_paths)
                missing = [p for p in detector.required_paths if p in errors]
            if missing:
                failed_detectors.append(detector.detector_id)
                first_error = first_error or errors[missing[0]]
                continue

            files = {path: contents.get(path) for path in detector.required_paths}
            try:
                finding = detector.classify(repository, files)
            except Exception as e:
                logger.exception("Detector %s failed on %s", detector.detector_id, repository)
                failed_detectors.append(detector.detector_id)
                first_error = first_error or FetchError("", f"detector error: {e}")
                continue
            outcome.findings.append(dataclasses.replace(finding, discovered_at=now))

        if failed_detectors:
            outcome.failure = FetchFailure(
                repository=repository,
                reason=first_error.reason if first_error else "unknown error",
                path=(first_error.path or None) if first_error else None,
                detector_ids=tuple(failed_detectors),
            )
        return outcome

    def run(self, candidates: Iterable[RepositoryRef], detectors: Sequence[Detector],
            token: Optional[CancelToken] = None, concurrency: Optional[int] = None) -> ScanReport:
        """Scan every candidate with every detector.

        Candidates are pulled lazily; at most twice the pool size are queued at
        once. On cancellation no new work is submitted, queued tasks are
        dropped, in-flight tasks are abandoned and the report is marked
        incomplete.

        Args:
            candidates: Repositories to scan (typically a lazy enumerator)
            detectors: Detectors to run on each repository
            token: Run cancellation token; defaults to the fetcher's
            concurrency: Pool size for this run

        Returns:
            ScanReport: findings and failures in candidate order
        """
        token = token or self.fetcher.token
        workers = max(1, concurrency or self.max_workers)
        report = ScanReport(detector_ids=[d.detector_id for d in detectors], started_at=self._clock())

        order: List[RepositoryRef] = []
        outcomes: Dict[int, RepositoryOutcome] = {}
        pending: Dict[concurrent.futures.Future, int] = {}
        iterator = iter(candidates)
        exhausted = False

        def collect(future: concurrent.futures.Future, index: int) -> None:
            repository = order[index]
            try:
                outcomes[index] = future.result()
            except ScanCancelled:
                logger.debug("Scan of %s abandoned", repository)
            except Exception as e:
                logger.exception("Unexpected error scanning %s", repository)
                outcomes[index] = RepositoryOutcome(failure=FetchFailure(
                    repository=repository,
                    reason=f"unexpected error: {e}",
                    detector_ids=tuple(d.detector_id for d in detectors),
                ))
                return
            if index in outcomes:
                logger.info("Scanned %s (%d done)", repository, len(outcomes))

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="orgscan")
        try:
            while True:
                while not exhausted and len(pending) < workers * 2 and not token.cancelled:
                    try:
                        repository = next(iterator)
                    except StopIteration:
                        exhausted = True
                        break
                    index = len(order)
                    order.append(repository)
                    pending[executor.submit(self.scan_repository, repository, detectors)] = index

                if token.cancelled or (exhausted and not pending):
                    break

                done, _ = concurrent.futures.wait(
                    pending, timeout=self.poll_interval, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    collect(future, pending.pop(future))
        finally:
            cancelled = token.cancelled
            executor.shutdown(wait=not cancelled, cancel_futures=cancelled)

        for future, index in list(pending.items()):
            if future.done() and not future.cancelled():
                collect(future, index)

        for index, repository in enumerate(order):
            outcome = outcomes.get(index)
            if outcome is None:
                report.unevaluated.append(repository)
                continue
            report.repositories.append(repository)
            report.findings.extend(outcome.findings)
            if outcome.failure is not None:
                report.failures.append(outcome.failure)

        if token.cancelled and (report.unevaluated or not exhausted):
            report.incomplete = True
            logger.warning(
                "Scan %s: %d repositories evaluated, %d abandoned; report is incomplete",
                token.reason or "cancelled", len(report.repositories), len(report.unevaluated)
            )
        report.finished_at = self._clock()
        return report
