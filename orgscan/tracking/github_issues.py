"""
Tracking issues kept on GitHub.

A tracking issue's body ends with a hidden marker holding the keys and
severities it records, so the next run can diff against it without
scraping the rendered tables::

    <!-- orgscan:state {"org/repo": "MEDIUM"} -->
"""
import json
import logging
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from ..detectors.base import Detector
from ..errors import ProviderError
from ..github.models import Comment, Issue
from ..models import ReconciliationPlan, ScanReport, Severity, TrackingIssueState
from ..reports.generator import IssueRenderer
from .reconciler import apply_plan

logger = logging.getLogger(__name__)

_STATE_MARKER = re.compile(r'<!--\s*orgscan:state\s+(\{.*?\})\s*-->', re.DOTALL)
_TABLE_LINK = re.compile(
    r'^\|\s*\[[^\]]*\]\(https://github\.com/([A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+)\)', re.MULTILINE
)


def daily_marker(date_key: str) -> str:
    return f"<!-- orgscan:daily:{date_key} -->"


def render_state_marker(state: TrackingIssueState) -> str:
    payload = {
        key: (state.severities[key].value if state.severities.get(key) else None)
        for key in sorted(state.open_finding_keys)
    }
    return f"<!-- orgscan:state {json.dumps(payload, sort_keys=True)} -->"


def parse_issue_state(issue: Optional[Issue]) -> TrackingIssueState:
    """Recover the recorded state from an issue body.

    Bodies without the state marker (written by older tooling) are read from
    their repository tables; severities are then unknown.
    """
    if issue is None:
        return TrackingIssueState()

    keys = set()
    severities: Dict[str, Severity] = {}
    match = _STATE_MARKER.search(issue.body)
    payload = None
    if match:
        try:
            payload = json.loads(match.group(1))
        except json.JSONDecodeError as e:
            logger.warning("Issue #%d has an unreadable state marker (%s); reading its tables", issue.number, e)

    if isinstance(payload, dict):
        for key, severity in payload.items():
            keys.add(key)
            if severity in Severity.__members__:
                severities[key] = Severity(severity)
    else:
        keys.update(_TABLE_LINK.findall(issue.body))

    return TrackingIssueState(
        issue_number=issue.number,
        open_finding_keys=frozenset(keys),
        severities=severities,
        last_updated_at=issue.updated_at,
        state=issue.state,
    )


class GitHubIssueTracker:
    """Reads and writes tracking issues in one repository."""

    def __init__(self, api, repo_full_name: str, renderer: Optional[IssueRenderer] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """Initialize the tracker.

        Args:
            api: GitHubAPI (or compatible) client
            repo_full_name: ``owner/repo`` holding the tracking issues
            renderer: Issue body renderer
            clock: Returns the current UTC time (tests)
        """
        self.api = api
        self.repo = repo_full_name
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.renderer = renderer or IssueRenderer(clock=self._clock)

    def read_issue_state(self, title: str) -> TrackingIssueState:
        issue = self.api.find_issue(self.repo, title)
        if issue is None:
            logger.info("No tracking issue titled %r in %s yet", title, self.repo)
        return parse_issue_state(issue)

    def apply_plan(self, title: str, prior: TrackingIssueState, plan: ReconciliationPlan,
                   report: ScanReport, detector: Detector) -> TrackingIssueState:
        """Rewrite the tracking issue to reflect ``plan``.

        Creates the issue when there is something to track, and reopens it if
        it was closed while findings remain.

        Returns:
            The state the issue now records
        """
        state = apply_plan(prior, plan, updated_at=self._clock())
        body = self.renderer.tracking_issue(detector, report, state, plan)
        body = f"{body.rstrip()}\n\n{render_state_marker(state)}\n"

        if not prior.exists:
            if not state.open_finding_keys:
                logger.info("Nothing to track for %s; not creating an issue", detector.detector_id)
                return state
            issue = self.api.create_issue(self.repo, title, body)
            logger.info("📝 Created tracking issue #%d: %s", issue.number, issue.html_url)
            return replace(state, issue_number=issue.number, state='open')

        fields = {'body': body}
        if prior.state == 'closed' and state.open_finding_keys:
            fields['state'] = 'open'
            logger.info("Reopening tracking issue #%d", prior.issue_number)
        issue = self.api.update_issue(self.repo, prior.issue_number, **fields)
        logger.info("📝 Updated tracking issue #%d (+%d, -%d, =%d)", issue.number,
                    len(plan.to_add), len(plan.to_remove), len(plan.unchanged))
        return replace(state, issue_number=issue.number, state=issue.state)

    def create_or_update_comment(self, issue_number: int, date_key: str, body: str) -> Comment:
        """Post the comment for ``date_key``, editing it if it already exists."""
        marker = daily_marker(date_key)
        text = f"{marker}\n{body}"
        for comment in self.api.list_comments(self.repo, issue_number):
            if marker in comment.body:
                if comment.body == text:
                    return comment
                return self.api.update_comment(self.repo, comment.id, text)
        return self.api.create_comment(self.repo, issue_number, text)

    def _find_open_repository_issue(self, repo_full_name: str, prefix: str) -> Optional[Issue]:
        for issue in self.api.iter_issues(repo_full_name, state='open'):
            if issue.title.startswith(prefix):
                return issue
        return None

    def sync_repository_issues(self, plan: ReconciliationPlan, detector: Detector) -> Dict[str, int]:
        """Open or update an issue on each newly flagged repository and close
        the ones on repositories that were resolved.

        Per-repository failures (issues disabled, no permission) are logged and
        counted; they do not stop the others.
        """
        counts = {'created': 0, 'updated': 0, 'closed': 0, 'failed': 0}
        for finding in plan.to_add:
            repo = finding.repository.full_name
            title = detector.issue_title(finding)
            body = self.renderer.repository_issue(detector, finding)
            try:
                existing = self._find_open_repository_issue(repo, detector.issue_title_prefix)
                if existing is None:
                    issue = self.api.create_issue(repo, title, body)
                    logger.info("Created issue %s", issue.html_url)
                    counts['created'] += 1
                elif existing.title != title or existing.body != body:
                    self.api.update_issue(repo, existing.number, title=title, body=body)
                    counts['updated'] += 1
            except ProviderError as e:
                logger.warning("Could not open an issue on %s: %s", repo, e)
                counts['failed'] += 1

        for entry in plan.to_remove:
            if entry.stale:
                continue
            try:
                existing = self._find_open_repository_issue(entry.key, detector.issue_title_prefix)
                if existing is None:
                    continue
                self.api.create_comment(entry.key, existing.number,
                                        self.renderer.resolution_comment(detector, entry))
                self.api.update_issue(entry.key, existing.number, state='closed')
                logger.info("Closed issue #%d on %s", existing.number, entry.key)
                counts['closed'] += 1
            except ProviderError as e:
                logger.warning("Could not close the issue on %s: %s", entry.key, e)
                counts['failed'] += 1
        return counts
