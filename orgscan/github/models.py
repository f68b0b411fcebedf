"""
Data models for GitHub API responses.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..models import RepositoryRef, parse_timestamp


def repository_from_api(data: Dict[str, Any]) -> RepositoryRef:
    """Build a RepositoryRef from a ``/repos`` listing item."""
    owner = (data.get('owner') or {}).get('login')
    if not owner:
        owner = data['full_name'].split('/', 1)[0]
    return RepositoryRef(
        organization=owner,
        name=data['name'],
        default_branch=data.get('default_branch') or 'main',
        is_fork=bool(data.get('fork')),
        is_archived=bool(data.get('archived')),
        last_pushed_at=parse_timestamp(data.get('pushed_at')),
    )


@dataclass
class Issue:
    """Issue information from GitHub API."""
    number: int
    title: str
    body: str = ""
    state: str = "open"
    html_url: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Issue":
        return cls(
            number=data['number'],
            title=data.get('title') or "",
            body=data.get('body') or "",
            state=data.get('state', 'open'),
            html_url=data.get('html_url'),
            updated_at=parse_timestamp(data.get('updated_at')),
        )

    @property
    def is_open(self) -> bool:
        return self.state == 'open'


@dataclass
class Comment:
    """Issue comment information from GitHub API."""
    id: int
    body: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Comment":
        return cls(id=data['id'], body=data.get('body') or "")
