"""
Report and issue-body generation for scan results.
"""
import json
import logging
import os
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, select_autoescape

from ..detectors.base import Detector
from ..models import (
    ReconciliationPlan,
    RemovedEntry,
    ScanFinding,
    ScanReport,
    Severity,
    TrackingIssueState,
    Verdict,
)

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), 'templates')

SEVERITY_ICONS = {
    Severity.CRITICAL: '🔴',
    Severity.HIGH: '🟠',
    Severity.MEDIUM: '🟡',
    Severity.INFO: '🔵',
}


class ReportFormat(str, Enum):
    """Supported report formats."""
    MARKDOWN = "markdown"
    JSON = "json"


def create_environment() -> Environment:
    """Jinja environment shared by reports and issue bodies."""
    env = Environment(
        loader=FileSystemLoader(TEMPLATE_DIR),
        autoescape=select_autoescape(['html']),
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=True,
    )
    env.filters['severity_icon'] = lambda severity: SEVERITY_ICONS.get(Severity(severity), '')
    env.filters['date'] = lambda value: value.strftime('%Y-%m-%d') if value else 'unknown'
    return env


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _finding_row(finding: ScanFinding, detector: Optional[Detector]) -> Dict[str, Any]:
    columns = detector.fact_columns() if detector else {}
    repo = finding.repository
    return {
        'key': finding.key,
        'name': repo.name,
        'organization': repo.organization,
        'url': repo.html_url,
        'branch': repo.default_branch,
        'last_pushed_at': repo.last_pushed_at,
        'severity': finding.severity.value,
        'verdict': finding.verdict.value,
        'summary': detector.describe(finding) if detector else finding.detector_id,
        'facts': [(heading, finding.facts.get(key, '')) for key, heading in columns.items()],
        'reason': finding.facts.get('reason', ''),
    }


def _by_severity(findings: Iterable[ScanFinding]) -> List[ScanFinding]:
    # sorted() is stable, so report order is kept within a severity
    return sorted(findings, key=lambda f: -f.severity.rank)


class ReportGenerator:
    """Writes the run's report artifacts at fixed paths."""

    REPORT_BASENAME = "compliance-report"

    def __init__(self, output_dir: str, formats: Sequence[ReportFormat] = (ReportFormat.MARKDOWN, ReportFormat.JSON)):
        """Initialize the report generator.

        Args:
            output_dir: Directory to save reports
            formats: Formats to write
        """
        self.output_dir = output_dir
        self.formats = list(formats)
        self.env = create_environment()
        self.logger = logging.getLogger(__name__)

    def path_for(self, fmt: ReportFormat) -> str:
        extension = 'md' if fmt == ReportFormat.MARKDOWN else 'json'
        return os.path.join(self.output_dir, f"{self.REPORT_BASENAME}.{extension}")

    def generate(self, report: ScanReport, detectors: Sequence[Detector]) -> Dict[ReportFormat, str]:
        """Write every configured format.

        Returns:
            Mapping of format to the written path
        """
        os.makedirs(self.output_dir, exist_ok=True)
        paths = {}
        for fmt in self.formats:
            if fmt == ReportFormat.JSON:
                paths[fmt] = self._generate_json_report(report)
            else:
                paths[fmt] = self._generate_markdown_report(report, detectors)
            self.logger.info("Report written to %s", paths[fmt])
        return paths

    def _prepare_report_data(self, report: ScanReport, detectors: Sequence[Detector]) -> Dict[str, Any]:
        by_id = {d.detector_id: d for d in detectors}
        sections = []
        for detector_id in report.detector_ids:
            detector = by_id.get(detector_id)
            findings = report.findings_for(detector_id)
            sections.append({
                'id': detector_id,
                'title': detector.title if detector else detector_id,
                'columns': list(detector.fact_columns().values()) if detector else [],
                'by_verdict': report.count_by_verdict(detector_id),
                'by_severity': report.count_by_severity(detector_id),
                'non_compliant': [_finding_row(f, detector) for f in _by_severity(report.non_compliant(detector_id))],
                'unknown': [
                    _finding_row(f, detector) for f in findings
                    if f.verdict == Verdict.UNKNOWN and not f.is_manifest_absent
                ],
                'not_applicable': sum(1 for f in findings if f.is_manifest_absent),
            })
        return {
            'title': "Compliance Scan Report",
            'generated_at': report.finished_at or _utcnow(),
            'started_at': report.started_at,
            'organizations': report.organizations,
            'incomplete': report.incomplete,
            'repositories_scanned': len(report.repositories),
            'sections': sections,
            'failures': report.failures,
            'unevaluated': report.unevaluated,
            'enumeration_failures': report.enumeration_failures,
        }

    def _generate_markdown_report(self, report: ScanReport, detectors: Sequence[Detector]) -> str:
        template = self.env.get_template('report.md.j2')
        content = template.render(**self._prepare_report_data(report, detectors))
        path = self.path_for(ReportFormat.MARKDOWN)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def _generate_json_report(self, report: ScanReport) -> str:
        path = self.path_for(ReportFormat.JSON)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(report.to_dict(), f, indent=2)
            f.write('\n')
        return path


class IssueRenderer:
    """Renders tracking-issue bodies, per-repository issues and daily comments."""

    def __init__(self, env: Optional[Environment] = None, clock: Optional[Callable[[], datetime]] = None):
        self.env = env or create_environment()
        self._clock = clock or _utcnow

    def tracking_issue(self, detector: Detector, report: ScanReport, state: TrackingIssueState,
                       plan: ReconciliationPlan) -> str:
        """Body listing every key the issue tracks after ``plan``, grouped by organization."""
        now = self._clock()
        year_ago = now - timedelta(days=365)
        current = {f.key: f for f in report.non_compliant(detector.detector_id)}

        groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        pending: List[str] = []
        for finding in report.non_compliant(detector.detector_id):
            if finding.key in state.open_finding_keys:
                groups.setdefault(finding.repository.organization, []).append(_finding_row(finding, detector))
        for key in sorted(state.open_finding_keys):
            if key not in current:
                pending.append(key)

        organizations = []
        for org, rows in groups.items():
            rows.sort(key=lambda row: row['last_pushed_at'] or datetime.min.replace(tzinfo=timezone.utc),
                      reverse=True)
            active = sum(1 for row in rows if row['last_pushed_at'] and row['last_pushed_at'] >= year_ago)
            organizations.append({'name': org, 'rows': rows, 'active': active})

        return self.env.get_template('tracking_issue.md.j2').render(
            detector=detector,
            columns=list(detector.fact_columns().values()),
            generated_at=now,
            organizations=organizations,
            total=len(state.open_finding_keys),
            by_severity=report.count_by_severity(detector.detector_id),
            pending=pending,
            added=[f.key for f in plan.to_add],
            removed=plan.to_remove,
            scanned=len(report.repositories),
        )

    def repository_issue(self, detector: Detector, finding: ScanFinding) -> str:
        return self.env.get_template('repository_issue.md.j2').render(
            detector=detector,
            finding=finding,
            row=_finding_row(finding, detector),
            generated_at=self._clock(),
        )

    def resolution_comment(self, detector: Detector, entry: RemovedEntry) -> str:
        return (f"{detector.title}: this repository is no longer flagged ({entry.reason}). "
                f"Closing automatically.")

    def daily_comment(self, detector: Detector, plan: ReconciliationPlan, report: ScanReport) -> str:
        return self.env.get_template('daily_comment.md.j2').render(
            detector=detector,
            added=[_finding_row(f, detector) for f in plan.to_add],
            removed=plan.to_remove,
            unchanged=len(plan.unchanged),
            failures=len(report.failures),
            generated_at=self._clock(),
        )
