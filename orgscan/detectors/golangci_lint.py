"""
Detects Go repositories pinning an outdated golangci-lint release.
"""
import re
from typing import Dict, List, Optional, Tuple

from ..models import RepositoryRef, ScanFinding, Severity
from .base import Detector, FileMap
from .versions import parse_version, strip_prefix

_SEMVER = r'v?(\d+\.\d+(?:\.\d+)?)'

# (path, pattern, source label), checked in order
_SOURCES: List[Tuple[str, re.Pattern, str]] = [
    (".github/workflows/golangci-lint.yml",
     re.compile(r'golangci-lint-action@[^\n]*\n(?:[^\n]*\n){0,6}?\s*version:\s*["\']?' + _SEMVER), "workflow"),
    (".github/workflows/lint.yml",
     re.compile(r'golangci-lint-action@[^\n]*\n(?:[^\n]*\n){0,6}?\s*version:\s*["\']?' + _SEMVER), "workflow"),
    ("Makefile", re.compile(r'GOLANGCI[_-]?LINT[_-]?VERSION\s*[?:]?=\s*' + _SEMVER), "makefile"),
    ("Makefile", re.compile(r'golangci-lint/cmd/golangci-lint@' + _SEMVER), "go install"),
    (".golangci.yml", re.compile(r'golangci-lint[^\n]*?' + _SEMVER), "config"),
    (".golangci.yaml", re.compile(r'golangci-lint[^\n]*?' + _SEMVER), "config"),
]


def find_pinned_version(files: FileMap) -> Optional[Tuple[str, str, str]]:
    """Return ``(version, path, source)`` of the first golangci-lint pin found."""
    for path, pattern, source in _SOURCES:
        content = files.get(path)
        if not content:
            continue
        match = pattern.search(content)
        if match:
            return match.group(1), path, source
    return None


class GolangciLintDetector(Detector):
    """Compares the pinned golangci-lint version with the latest release."""

    detector_id = "golangci-lint"
    title = "Outdated GolangCI-Lint Versions"
    required_paths = tuple(dict.fromkeys(["go.mod"] + [path for path, _, _ in _SOURCES]))
    manifest_paths = ("go.mod",)
    no_manifest_partition = "no-gomod"

    def __init__(self, latest_version: str):
        super().__init__()
        if parse_version(latest_version) is None:
            raise ValueError(f"Not a version: {latest_version!r}")
        self.latest_version = strip_prefix(latest_version)

    def classify(self, repository: RepositoryRef, files: FileMap) -> ScanFinding:
        if self.manifest_absent(files):
            return self.manifest_absent_finding(repository)

        pinned = find_pinned_version(files)
        if pinned is None:
            return self.unknown(repository, "no golangci-lint version pinned")
        version, path, source = pinned

        current = parse_version(version)
        latest = parse_version(self.latest_version)
        facts = dict(current_version=version, latest_version=self.latest_version, path=path, source=source)
        if current[:2] >= latest[:2]:
            return self.compliant(repository, **facts)
        severity = Severity.HIGH if current[0] < latest[0] else Severity.MEDIUM
        return self.non_compliant(repository, severity, **facts)

    def describe(self, finding: ScanFinding) -> str:
        return (f"Update golangci-lint from v{finding.facts.get('current_version')} "
                f"to v{finding.facts.get('latest_version')}")

    def fact_columns(self) -> Dict[str, str]:
        return {'current_version': 'Current Version', 'latest_version': 'Latest', 'path': 'Source'}
