"""
Version parsing and the remote lookups that feed detector configuration.
"""
import logging
import re
from typing import List, Optional, Tuple

import requests

logger = logging.getLogger(__name__)

GO_DOWNLOADS_URL = "https://go.dev/dl/?mode=json"

_VERSION = re.compile(r'v?(\d+)\.(\d+)(?:\.(\d+))?')


def parse_version(value: str) -> Optional[Tuple[int, int, int]]:
    """Parse ``1.21``, ``go1.21.3`` or ``v1.55.2`` into a comparable tuple."""
    if not value:
        return None
    match = _VERSION.search(value)
    if not match:
        return None
    major, minor, patch = match.groups()
    return int(major), int(minor), int(patch or 0)


def minor_series(value: str) -> Optional[str]:
    """``1.21.3`` -> ``1.21``."""
    parsed = parse_version(value)
    if parsed is None:
        return None
    return f"{parsed[0]}.{parsed[1]}"


def strip_prefix(value: str) -> str:
    """Drop a leading ``go`` or ``v``."""
    if value.startswith('go'):
        return value[2:]
    return value.lstrip('v')


def fetch_stable_go_versions(session: Optional[requests.Session] = None, timeout: int = 30) -> List[str]:
    """Fetch the currently supported Go releases from go.dev.

    Returns:
        Versions without the ``go`` prefix, newest first (e.g. ``["1.23.2", "1.22.8"]``)

    Raises:
        requests.RequestException: if go.dev cannot be reached
    """
    http = session or requests.Session()
    response = http.get(GO_DOWNLOADS_URL, timeout=timeout)
    response.raise_for_status()
    versions = [strip_prefix(release['version']) for release in response.json() if release.get('stable')]
    versions.sort(key=lambda v: parse_version(v) or (0, 0, 0), reverse=True)
    logger.info("Found %d stable Go versions: %s", len(versions), ", ".join(versions))
    return versions
