"""
Repository identifier handling for list files and command-line input.

Accepts the spellings people paste into list files:
- ``owner/repo``
- ``github.com/owner/repo``
- ``https://github.com/owner/repo`` (optionally with ``.git`` or a trailing slash)

Lines starting with ``#`` or ``//`` are comments.
"""
import logging
import os
import re
from typing import List, Optional

logger = logging.getLogger(__name__)

_URL_PREFIX = re.compile(r'^(?:https?://)?(?:www\.)?github\.com/', re.IGNORECASE)
_IDENTIFIER = re.compile(r'^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$')
COMMENT_PREFIXES = ('#', '//')


def normalize_repo_identifier(value: str) -> Optional[str]:
    """Reduce a repository reference to ``owner/repo``.

    Returns:
        The normalized identifier, or None if the value is blank, a comment,
        or not recognisable as a repository.
    """
    value = value.strip()
    if not value or value.startswith(COMMENT_PREFIXES):
        return None

    value = _URL_PREFIX.sub('', value)
    value = value.rstrip('/')
    if value.endswith('.git'):
        value = value[:-4]
    # Drop deep links such as owner/repo/tree/main
    parts = value.split('/')
    if len(parts) > 2:
        value = '/'.join(parts[:2])

    if not _IDENTIFIER.match(value):
        return None
    return value


def read_repo_list(path: str) -> List[str]:
    """Read a list file, returning normalized unique identifiers in file order.

    A missing file is an empty list.
    """
    if not os.path.exists(path):
        return []

    identifiers: List[str] = []
    seen = set()
    with open(path, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith(COMMENT_PREFIXES):
                continue
            identifier = normalize_repo_identifier(stripped)
            if identifier is None:
                logger.warning("%s:%d: ignoring unrecognised entry %r", path, line_number, stripped)
                continue
            if identifier not in seen:
                seen.add(identifier)
                identifiers.append(identifier)
    logger.debug("Loaded %d repositories from %s", len(identifiers), path)
    return identifiers
