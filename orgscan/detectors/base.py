"""
Base class for compliance detectors.
"""
import abc
import logging
from typing import Dict, Mapping, Optional, Tuple

from ..models import MANIFEST_ABSENT, RepositoryRef, ScanFinding, Severity, Verdict

FileMap = Mapping[str, Optional[str]]


class Detector(abc.ABC):
    """Abstract base class for all detectors.

    A detector names the files it needs and turns their contents into a
    single :class:`ScanFinding`. ``classify`` must be pure: no I/O, no shared
    state, same input same output.
    """

    #: Stable identifier used on the command line and in cache/issue keys
    detector_id: str = ""
    #: Human readable name
    title: str = ""
    #: Every path the detector reads
    required_paths: Tuple[str, ...] = ()
    #: Paths whose joint absence means the detector does not apply
    manifest_paths: Tuple[str, ...] = ()
    #: Cache partition recording repositories without the manifest
    no_manifest_partition: Optional[str] = None

    def __init__(self):
        self.logger = logging.getLogger(f"detector.{self.detector_id}")

    @property
    def tracking_issue_title(self) -> str:
        return f"Tracking {self.title}"

    @property
    def issue_title_prefix(self) -> str:
        """Prefix identifying per-repository issues opened by this detector."""
        return f"[orgscan:{self.detector_id}]"

    def issue_title(self, finding: ScanFinding) -> str:
        return f"{self.issue_title_prefix} {self.describe(finding)}"

    def describe(self, finding: ScanFinding) -> str:
        """One-line summary of a finding for issue titles and tables."""
        return self.title

    def manifest_absent(self, files: FileMap) -> bool:
        if not self.manifest_paths:
            return False
        return all(files.get(path) is None for path in self.manifest_paths)

    @abc.abstractmethod
    def classify(self, repository: RepositoryRef, files: FileMap) -> ScanFinding:
        """Classify a repository from the contents of ``required_paths``.

        Args:
            repository: Repository being classified
            files: path -> text, or None for absent files

        Returns:
            ScanFinding: the verdict for this repository
        """
        pass

    # Helpers for subclasses

    def _finding(self, repository: RepositoryRef, verdict: Verdict,
                 severity: Severity = Severity.INFO, **facts: str) -> ScanFinding:
        return ScanFinding(
            repository=repository,
            detector_id=self.detector_id,
            verdict=verdict,
            severity=severity,
            facts=facts,
        )

    def compliant(self, repository: RepositoryRef, **facts: str) -> ScanFinding:
        return self._finding(repository, Verdict.COMPLIANT, **facts)

    def non_compliant(self, repository: RepositoryRef, severity: Severity, **facts: str) -> ScanFinding:
        return self._finding(repository, Verdict.NON_COMPLIANT, severity, **facts)

    def unknown(self, repository: RepositoryRef, reason: str, **facts: str) -> ScanFinding:
        return self._finding(repository, Verdict.UNKNOWN, reason=reason, **facts)

    def manifest_absent_finding(self, repository: RepositoryRef) -> ScanFinding:
        return self.unknown(repository, MANIFEST_ABSENT, manifests=", ".join(self.manifest_paths))

    def fact_columns(self) -> Dict[str, str]:
        """Fact keys shown as table columns in reports and issues, with headings."""
        return {}
