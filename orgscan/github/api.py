"""
GitHub API client used for repository listing, file content and issues.
"""
import logging
import time
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .. import __version__
from ..errors import OperationalFailure, ProviderError, RateLimitError, TransientProviderError
from ..models import RepositoryRef
from .models import Comment, Issue, repository_from_api


class GitHubAPI:
    """GitHub API client with rate limiting and retry logic."""

    BASE_URL = "https://api.github.com"
    RAW_MEDIA_TYPE = "application/vnd.github.raw"
    PER_PAGE = 100  # Maximum allowed by GitHub API

    def __init__(self, token: str, base_url: Optional[str] = None, max_retries: int = 3,
                 timeout: int = 30, session: Optional[requests.Session] = None):
        """Initialize the GitHub API client.

        Args:
            token: GitHub personal access token
            base_url: API root, for GitHub Enterprise installs
            max_retries: Connection-level retries performed by the HTTP adapter
            timeout: Per-request timeout in seconds
            session: Pre-built session (tests)
        """
        self.token = token
        self.base_url = (base_url or self.BASE_URL).rstrip('/')
        self.max_retries = max_retries
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self.session = session or self._create_session()
        self._sleep = time.sleep

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic and authentication."""
        session = requests.Session()
        retries = Retry(
            total=self.max_retries,
            backoff_factor=1,
            status_forcelist=[502, 503, 504],
            allowed_methods=["GET"],
            raise_on_status=False,
        )
        session.mount("https://", HTTPAdapter(max_retries=retries))
        headers = {
            "Accept": "application/vnd.github.v3+json",
            "User-Agent": f"orgscan/{__version__}",
        }
        if self.token:
            headers["Authorization"] = f"token {self.token}"
        session.headers.update(headers)
        return session

    @staticmethod
    def _rate_limit_reset(response: requests.Response) -> Optional[float]:
        """Return the reset time if the response is a rate-limit refusal."""
        if response.status_code not in (403, 429):
            return None
        if response.headers.get('X-RateLimit-Remaining') == '0':
            return float(response.headers.get('X-RateLimit-Reset', time.time() + 60))
        retry_after = response.headers.get('Retry-After')
        if retry_after is not None:
            return time.time() + float(retry_after)
        return None

    def _make_request(self, method: str, endpoint: str, wait_on_rate_limit: bool = True,
                      **kwargs) -> requests.Response:
        """Make an authenticated request with rate limit handling.

        With ``wait_on_rate_limit`` the call sleeps until the limit resets and
        retries; otherwise :class:`RateLimitError` is raised so the caller can
        coordinate the pause itself.

        Returns the response for 2xx-4xx statuses; 401 and 5xx are raised.
        """
        if endpoint.startswith('http'):
            url = endpoint
        else:
            url = f"{self.base_url}/{endpoint.lstrip('/')}"
        kwargs.setdefault('timeout', self.timeout)

        while True:
            try:
                response = self.session.request(method, url, **kwargs)
            except requests.RequestException as e:
                raise TransientProviderError(f"{method} {url} failed: {e}") from e

            reset_at = self._rate_limit_reset(response)
            if reset_at is None:
                break
            if not wait_on_rate_limit:
                raise RateLimitError(f"Rate limit reached for {url}", reset_at=reset_at,
                                     status_code=response.status_code)
            sleep_time = max(0, reset_at - time.time() + 5)  # Add 5s buffer
            self.logger.warning(
                "Rate limit reached. Sleeping for %.1f seconds until %s",
                sleep_time,
                time.ctime(reset_at)
            )
            self._sleep(sleep_time)

        if response.status_code == 401:
            raise OperationalFailure("GitHub rejected the token (401 Unauthorized)")
        if response.status_code >= 500:
            raise TransientProviderError(
                f"{method} {url} returned {response.status_code}", status_code=response.status_code
            )
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.status_code >= 400:
            raise ProviderError(
                f"{response.request.method} {response.url} returned {response.status_code}",
                status_code=response.status_code,
            )

    def _paginate(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
        """Yield items from every page of a list endpoint."""
        params = dict(params or {})
        params.setdefault('per_page', self.PER_PAGE)
        url: Optional[str] = endpoint
        while url:
            response = self._make_request('GET', url, params=params)
            self._raise_for_status(response)
            for item in response.json():
                yield item
            url = response.links.get('next', {}).get('url')
            params = None  # the next link already carries the query

    def validate_token(self) -> None:
        """Check that the configured token is accepted.

        Raises:
            OperationalFailure: if the token is missing, rejected, or GitHub is unreachable
        """
        if not self.token:
            raise OperationalFailure("GitHub token not provided. Use --token or set GITHUB_TOKEN.")
        try:
            response = self._make_request('GET', 'rate_limit')
        except TransientProviderError as e:
            raise OperationalFailure(f"Cannot reach GitHub: {e}") from e
        self._raise_for_status(response)
        remaining = response.json().get('resources', {}).get('core', {}).get('remaining')
        self.logger.debug("Token accepted, %s core requests remaining", remaining)

    def list_repositories(self, org: str, limit: Optional[int] = None) -> Iterator[RepositoryRef]:
        """Lazily list the repositories of an organization (or user account).

        Args:
            org: Organization or user login
            limit: Stop after this many repositories

        Yields:
            RepositoryRef for each repository, in provider order
        """
        endpoint = f'orgs/{org}/repos'
        first_page = self._make_request('GET', endpoint, params={'per_page': 1})
        if first_page.status_code == 404:
            self.logger.info("%s is not an organization, listing it as a user account", org)
            endpoint = f'users/{org}/repos'

        count = 0
        for item in self._paginate(endpoint, {'type': 'all'}):
            yield repository_from_api(item)
            count += 1
            if limit and count >= limit:
                self.logger.info("Reached listing limit of %d repositories for %s", limit, org)
                return

    def get_repository(self, full_name: str) -> Optional[RepositoryRef]:
        """Get a single repository, or None if it does not exist."""
        response = self._make_request('GET', f'repos/{full_name}')
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return repository_from_api(response.json())

    def get_file_content(self, org: str, repo: str, path: str, ref: Optional[str] = None) -> Optional[str]:
        """Fetch a file's raw text.

        Rate limiting is not waited out here; :class:`RateLimitError` is raised
        for the caller to coordinate.

        Returns:
            The file text, or None if the file (or repository) does not exist
        """
        params = {'ref': ref} if ref else None
        response = self._make_request(
            'GET',
            f'repos/{org}/{repo}/contents/{quote(path)}',
            wait_on_rate_limit=False,
            params=params,
            headers={'Accept': self.RAW_MEDIA_TYPE},
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return response.text

    def get_latest_release(self, owner: str, repo: str) -> Optional[str]:
        """Return the tag name of the latest published release."""
        response = self._make_request('GET', f'repos/{owner}/{repo}/releases/latest')
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return response.json().get('tag_name')

    # Issues

    def iter_issues(self, repo_full_name: str, state: str = 'all') -> Iterator[Issue]:
        """Yield issues (not pull requests) of a repository."""
        for item in self._paginate(f'repos/{repo_full_name}/issues', {'state': state}):
            if 'pull_request' in item:
                continue
            yield Issue.from_api(item)

    def find_issue(self, repo_full_name: str, title: str, state: str = 'all') -> Optional[Issue]:
        """Find an issue by exact title, preferring an open one."""
        matches = [issue for issue in self.iter_issues(repo_full_name, state) if issue.title == title]
        if not matches:
            return None
        open_matches = [issue for issue in matches if issue.is_open]
        return (open_matches or matches)[0]

    def create_issue(self, repo_full_name: str, title: str, body: str) -> Issue:
        response = self._make_request('POST', f'repos/{repo_full_name}/issues',
                                      json={'title': title, 'body': body})
        self._raise_for_status(response)
        return Issue.from_api(response.json())

    def update_issue(self, repo_full_name: str, number: int, **fields) -> Issue:
        """Patch an issue's ``body``, ``title`` or ``state``."""
        response = self._make_request('PATCH', f'repos/{repo_full_name}/issues/{number}', json=fields)
        self._raise_for_status(response)
        return Issue.from_api(response.json())

    def list_comments(self, repo_full_name: str, number: int) -> Iterator[Comment]:
        for item in self._paginate(f'repos/{repo_full_name}/issues/{number}/comments'):
            yield Comment.from_api(item)

    def create_comment(self, repo_full_name: str, number: int, body: str) -> Comment:
        response = self._make_request('POST', f'repos/{repo_full_name}/issues/{number}/comments',
                                      json={'body': body})
        self._raise_for_status(response)
        return Comment.from_api(response.json())

    def update_comment(self, repo_full_name: str, comment_id: int, body: str) -> Comment:
        response = self._make_request('PATCH', f'repos/{repo_full_name}/issues/comments/{comment_id}',
                                      json={'body': body})
        self._raise_for_status(response)
        return Comment.from_api(response.json())
