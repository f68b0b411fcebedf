"""
Data models shared by the enumerator, aggregator, reconciler and cache layers.
"""
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple


MANIFEST_ABSENT = "manifest-absent"


class Severity(str, Enum):
    """Finding severity levels, lowest first."""
    INFO = "INFO"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.INFO, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class Verdict(str, Enum):
    """Outcome of one detector on one repository."""
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non-compliant"
    UNKNOWN = "unknown"


class ExclusionReason(str, Enum):
    """Why a repository sits in a cache partition."""
    FORK = "fork"
    ABANDONED = "abandoned"
    NO_MANIFEST = "no-manifest"
    BLOCKLISTED = "blocklisted"


# Partition each reason is recorded into unless a detector names its own.
DEFAULT_PARTITIONS = {
    ExclusionReason.FORK: "forks",
    ExclusionReason.ABANDONED: "abandoned",
    ExclusionReason.NO_MANIFEST: "no-manifest",
    ExclusionReason.BLOCKLISTED: "blocklisted",
}

ENUMERATION_PARTITIONS = (
    DEFAULT_PARTITIONS[ExclusionReason.FORK],
    DEFAULT_PARTITIONS[ExclusionReason.ABANDONED],
    DEFAULT_PARTITIONS[ExclusionReason.BLOCKLISTED],
)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a GitHub/ISO-8601 timestamp, accepting the trailing ``Z``."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


@dataclass(frozen=True)
class RepositoryRef:
    """A repository as listed by the provider.

    Identity (equality and hashing) is ``(organization, name)`` only; the
    remaining attributes are listing metadata.
    """
    organization: str
    name: str
    default_branch: str = field(default="main", compare=False)
    is_fork: bool = field(default=False, compare=False)
    is_archived: bool = field(default=False, compare=False)
    last_pushed_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def full_name(self) -> str:
        return f"{self.organization}/{self.name}"

    @property
    def key(self) -> str:
        """Key used by caches and tracking issues."""
        return self.full_name

    @property
    def html_url(self) -> str:
        return f"https://github.com/{self.full_name}"

    @classmethod
    def from_full_name(cls, full_name: str, **kwargs) -> "RepositoryRef":
        organization, _, name = full_name.partition('/')
        if not organization or not name:
            raise ValueError(f"Expected 'owner/name', got {full_name!r}")
        return cls(organization=organization, name=name, **kwargs)

    def __str__(self) -> str:
        return self.full_name


@dataclass(frozen=True)
class CacheEntry:
    """Membership of one repository in a cache partition."""
    repository: str
    reason: ExclusionReason
    recorded_at: datetime


@dataclass(frozen=True)
class ScanFinding:
    """Verdict of a single detector on a single repository."""
    repository: RepositoryRef
    detector_id: str
    verdict: Verdict
    severity: Severity = Severity.INFO
    facts: Mapping[str, str] = field(default_factory=dict, compare=False)
    discovered_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def key(self) -> str:
        return self.repository.key

    @property
    def is_manifest_absent(self) -> bool:
        return self.verdict == Verdict.UNKNOWN and self.facts.get("reason") == MANIFEST_ABSENT


@dataclass(frozen=True)
class FetchFailure:
    """A repository whose files could not be read for the listed detectors."""
    repository: RepositoryRef
    reason: str
    path: Optional[str] = None
    detector_ids: Tuple[str, ...] = ()


@dataclass
class ScanReport:
    """Result of one scan run, owned by the aggregator while the run is live."""
    detector_ids: List[str]
    organizations: List[str] = field(default_factory=list)
    repositories: List[RepositoryRef] = field(default_factory=list)
    findings: List[ScanFinding] = field(default_factory=list)
    failures: List[FetchFailure] = field(default_factory=list)
    unevaluated: List[RepositoryRef] = field(default_factory=list)
    observations: List[CacheEntry] = field(default_factory=list)
    enumeration_failures: List[Tuple[str, str]] = field(default_factory=list)
    incomplete: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def findings_for(self, detector_id: str) -> List[ScanFinding]:
        return [f for f in self.findings if f.detector_id == detector_id]

    def non_compliant(self, detector_id: Optional[str] = None) -> List[ScanFinding]:
        """Non-compliant findings, optionally for one detector, in report order."""
        return [
            f for f in self.findings
            if f.verdict == Verdict.NON_COMPLIANT
            and (detector_id is None or f.detector_id == detector_id)
        ]

    def failed_keys(self, detector_id: Optional[str] = None) -> FrozenSet[str]:
        return frozenset(
            failure.repository.key for failure in self.failures
            if detector_id is None or not failure.detector_ids or detector_id in failure.detector_ids
        )

    def scanned_keys(self) -> FrozenSet[str]:
        return frozenset(repo.key for repo in self.repositories)

    def count_by_severity(self, detector_id: Optional[str] = None) -> Dict[str, int]:
        counts = Counter(f.severity.value for f in self.non_compliant(detector_id))
        return {severity.value: counts.get(severity.value, 0) for severity in reversed(_SEVERITY_ORDER)}

    def count_by_verdict(self, detector_id: Optional[str] = None) -> Dict[str, int]:
        findings = self.findings if detector_id is None else self.findings_for(detector_id)
        counts = Counter(f.verdict.value for f in findings)
        return {verdict.value: counts.get(verdict.value, 0) for verdict in Verdict}

    def to_dict(self) -> Dict[str, Any]:
        """Plain-data form used by the JSON report."""
        return {
            'detectors': list(self.detector_ids),
            'organizations': list(self.organizations),
            'incomplete': self.incomplete,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'repositories_scanned': len(self.repositories),
            'summary': {
                'by_verdict': self.count_by_verdict(),
                'by_severity': self.count_by_severity(),
            },
            'findings': [
                {
                    'repository': f.repository.full_name,
                    'detector': f.detector_id,
                    'verdict': f.verdict.value,
                    'severity': f.severity.value,
                    'facts': dict(f.facts),
                    'discovered_at': f.discovered_at.isoformat() if f.discovered_at else None,
                }
                for f in self.findings
            ],
            'failures': [
                {
                    'repository': failure.repository.full_name,
                    'reason': failure.reason,
                    'path': failure.path,
                    'detectors': list(failure.detector_ids),
                }
                for failure in self.failures
            ],
            'unevaluated': [repo.full_name for repo in self.unevaluated],
            'enumeration_failures': [
                {'organization': org, 'reason': reason} for org, reason in self.enumeration_failures
            ],
        }


@dataclass(frozen=True)
class TrackingIssueState:
    """What a tracking issue currently records."""
    issue_number: Optional[int] = None
    open_finding_keys: FrozenSet[str] = frozenset()
    severities: Mapping[str, Severity] = field(default_factory=dict, compare=False)
    last_updated_at: Optional[datetime] = None
    state: str = "missing"

    @property
    def exists(self) -> bool:
        return self.issue_number is not None


@dataclass(frozen=True)
class RemovedEntry:
    """A key leaving the tracking issue."""
    key: str
    stale: bool = False
    reason: str = ""


@dataclass(frozen=True)
class ReconciliationPlan:
    """Difference between a report and a tracking issue's prior state."""
    to_add: Tuple[ScanFinding, ...] = ()
    to_remove: Tuple[RemovedEntry, ...] = ()
    unchanged: FrozenSet[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove
