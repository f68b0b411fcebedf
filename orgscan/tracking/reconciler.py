"""
Diffing a scan report against what a tracking issue already records.

Everything here is pure: no I/O, no clock unless one is passed in.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from ..errors import IncompleteReportError
from ..models import (
    ReconciliationPlan,
    RemovedEntry,
    ScanFinding,
    ScanReport,
    Severity,
    TrackingIssueState,
)

STALE_REASON = "no longer present in the organization listing"


def _organization(key: str) -> str:
    return key.split('/', 1)[0]


def reconcile(report: ScanReport, prior: TrackingIssueState, detector_id: Optional[str] = None,
              organizations: Optional[Iterable[str]] = None) -> ReconciliationPlan:
    """Compute what must change on a tracking issue.

    Args:
        report: Complete scan report
        prior: State currently recorded by the tracking issue
        detector_id: Detector whose findings the issue tracks; may be omitted
            when the report covers a single detector
        organizations: Organizations the run enumerated; defaults to the report's

    Returns:
        ReconciliationPlan keyed by repository

    Raises:
        IncompleteReportError: if the report was cut short
    """
    if report.incomplete:
        raise IncompleteReportError("Refusing to reconcile an incomplete report")
    if detector_id is None:
        if len(report.detector_ids) != 1:
            raise ValueError("detector_id is required when the report covers several detectors")
        detector_id = report.detector_ids[0]

    current: Dict[str, ScanFinding] = {}
    for finding in report.non_compliant(detector_id):
        current.setdefault(finding.key, finding)
    evaluated = {finding.key: finding for finding in report.findings_for(detector_id)}
    failed = report.failed_keys(detector_id)
    scanned = report.scanned_keys()
    observed = {entry.repository: entry.reason for entry in report.observations}
    scanned_orgs: Set[str] = set(organizations if organizations is not None else report.organizations)
    unlisted_orgs = {org for org, _ in report.enumeration_failures}

    to_add: List[ScanFinding] = []
    unchanged: Set[str] = set()
    for key, finding in current.items():
        if key in prior.open_finding_keys:
            recorded = prior.severities.get(key)
            if recorded is None or recorded == finding.severity:
                unchanged.add(key)
                continue
        to_add.append(finding)

    to_remove: List[RemovedEntry] = []
    for key in sorted(prior.open_finding_keys):
        if key in current:
            continue
        org = _organization(key)
        if key in failed or org in unlisted_orgs:
            # Could not be re-evaluated this run
            unchanged.add(key)
        elif key in evaluated:
            to_remove.append(RemovedEntry(key, reason=f"now {evaluated[key].verdict.value}"))
        elif key in scanned:
            to_remove.append(RemovedEntry(key, reason="detector no longer applies"))
        elif key in observed:
            to_remove.append(RemovedEntry(key, reason=f"excluded as {observed[key].value}"))
        elif scanned_orgs and org not in scanned_orgs:
            unchanged.add(key)
        else:
            to_remove.append(RemovedEntry(key, stale=True, reason=STALE_REASON))

    return ReconciliationPlan(to_add=tuple(to_add), to_remove=tuple(to_remove), unchanged=frozenset(unchanged))


def apply_plan(prior: TrackingIssueState, plan: ReconciliationPlan,
               updated_at: Optional[datetime] = None) -> TrackingIssueState:
    """The state a tracking issue records after ``plan`` is applied."""
    removed = {entry.key for entry in plan.to_remove}
    keys = (set(prior.open_finding_keys) - removed) | {finding.key for finding in plan.to_add}
    severities: Dict[str, Severity] = {
        key: severity for key, severity in prior.severities.items() if key in keys
    }
    for finding in plan.to_add:
        severities[finding.key] = finding.severity
    return TrackingIssueState(
        issue_number=prior.issue_number,
        open_finding_keys=frozenset(keys),
        severities=severities,
        last_updated_at=updated_at or prior.last_updated_at,
        state="open" if keys else prior.state,
    )
