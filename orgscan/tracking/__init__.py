from .github_issues import GitHubIssueTracker, parse_issue_state, render_state_marker
from .reconciler import apply_plan, reconcile

__all__ = ['GitHubIssueTracker', 'apply_plan', 'parse_issue_state', 'reconcile', 'render_state_marker']
