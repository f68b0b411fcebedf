"""In-memory stand-in for the GitHub provider used by the pipeline tests."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Optional, Tuple

from orgscan.errors import OperationalFailure, ProviderError
from orgscan.github.models import Comment, Issue
from orgscan.models import RepositoryRef

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_repo(full_name: str, **kwargs) -> RepositoryRef:
    kwargs.setdefault("last_pushed_at", datetime(2024, 5, 1, tzinfo=timezone.utc))
    return RepositoryRef.from_full_name(full_name, **kwargs)


class FakeGitHub:
    """Repository listing, file content and issues held in dictionaries.

    ``files`` maps ``(owner/repo, path)`` to text, ``None`` (absent), an
    exception to raise, or a list of such outcomes consumed one per call.
    """

    def __init__(
        self,
        repos: Optional[Dict[str, List[RepositoryRef]]] = None,
        files: Optional[Dict[Tuple[str, str], object]] = None,
    ) -> None:
        self.repos = repos or {}
        self.files = files or {}
        self.list_errors: Dict[str, Exception] = {}
        self.token_valid = True
        self.file_calls: List[Tuple[str, str]] = []
        self.issues: Dict[str, List[Issue]] = {}
        self.comments: Dict[Tuple[str, int], List[Comment]] = {}
        self.writes: List[Tuple[str, str]] = []
        self._lock = threading.Lock()
        self._next_id = 1

    # Provider

    def validate_token(self) -> None:
        if not self.token_valid:
            raise OperationalFailure("GitHub rejected the token (401 Unauthorized)")

    def list_repositories(self, org: str, limit: Optional[int] = None) -> Iterator[RepositoryRef]:
        for count, repo in enumerate(self.repos.get(org, []), start=1):
            yield repo
            if limit and count >= limit:
                return
        if org in self.list_errors:
            raise self.list_errors[org]

    def get_repository(self, full_name: str) -> Optional[RepositoryRef]:
        for repos in self.repos.values():
            for repo in repos:
                if repo.full_name == full_name:
                    return repo
        return None

    def get_file_content(self, org: str, repo: str, path: str, ref: Optional[str] = None) -> Optional[str]:
        key = (f"{org}/{repo}", path)
        with self._lock:
            self.file_calls.append(key)
            outcome = self.files.get(key)
            if isinstance(outcome, list):
                outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    # Issues

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def iter_issues(self, repo_full_name: str, state: str = "all") -> Iterator[Issue]:
        for issue in list(self.issues.get(repo_full_name, [])):
            if state == "all" or issue.state == state:
                yield issue

    def find_issue(self, repo_full_name: str, title: str, state: str = "all") -> Optional[Issue]:
        for issue in self.iter_issues(repo_full_name, state):
            if issue.title == title:
                return issue
        return None

    def create_issue(self, repo_full_name: str, title: str, body: str) -> Issue:
        if repo_full_name.endswith("/issues-disabled"):
            raise ProviderError("issues are disabled", status_code=410)
        issue = Issue(number=self._new_id(), title=title, body=body, state="open",
                      html_url=f"https://github.com/{repo_full_name}/issues/{self._next_id}",
                      updated_at=NOW)
        self.issues.setdefault(repo_full_name, []).append(issue)
        self.writes.append(("create_issue", repo_full_name))
        return issue

    def update_issue(self, repo_full_name: str, number: int, **fields) -> Issue:
        issues = self.issues[repo_full_name]
        for index, issue in enumerate(issues):
            if issue.number == number:
                issues[index] = replace(issue, **fields)
                self.writes.append(("update_issue", repo_full_name))
                return issues[index]
        raise ProviderError(f"issue {number} not found", status_code=404)

    def list_comments(self, repo_full_name: str, number: int) -> Iterator[Comment]:
        yield from list(self.comments.get((repo_full_name, number), []))

    def create_comment(self, repo_full_name: str, number: int, body: str) -> Comment:
        comment = Comment(id=self._new_id(), body=body)
        self.comments.setdefault((repo_full_name, number), []).append(comment)
        self.writes.append(("create_comment", repo_full_name))
        return comment

    def update_comment(self, repo_full_name: str, comment_id: int, body: str) -> Comment:
        for comments in self.comments.values():
            for index, comment in enumerate(comments):
                if comment.id == comment_id:
                    comments[index] = Comment(id=comment_id, body=body)
                    self.writes.append(("update_comment", repo_full_name))
                    return comments[index]
        raise ProviderError(f"comment {comment_id} not found", status_code=404)
