"""
GitHub provider: repository listing, file content and issues.
"""
from .api import GitHubAPI
from .models import Comment, Issue, repository_from_api

__all__ = ['GitHubAPI', 'Comment', 'Issue', 'repository_from_api']
