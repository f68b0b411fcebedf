"""
Detects Go modules declaring a Go release that is no longer supported.
"""
import re
from typing import Dict, Optional, Sequence

from ..models import RepositoryRef, ScanFinding, Severity
from .base import Detector, FileMap
from .versions import minor_series, parse_version

_GO_DIRECTIVE = re.compile(r'^go\s+(\d+\.\d+(?:\.\d+)?)\s*(?://.*)?$', re.MULTILINE)


def extract_go_version(go_mod: str) -> Optional[str]:
    """Return the version of the ``go`` directive, if any."""
    match = _GO_DIRECTIVE.search(go_mod)
    return match.group(1) if match else None


class GoVersionDetector(Detector):
    """Flags ``go.mod`` files whose ``go`` directive is outside the supported releases.

    By default only the minor series is compared (``1.22.1`` is fine while
    ``1.22.x`` is supported); ``check_patch`` compares the exact release.
    Versions six or more minor series behind the latest are HIGH, others MEDIUM.
    """

    detector_id = "go-version"
    title = "Out of Date Golang Versions"
    required_paths = ("go.mod",)
    manifest_paths = ("go.mod",)
    no_manifest_partition = "no-gomod"

    HIGH_SEVERITY_LAG = 6

    def __init__(self, supported_versions: Sequence[str], check_patch: bool = False):
        super().__init__()
        if not supported_versions:
            raise ValueError("At least one supported Go version is required")
        self.supported_versions = list(supported_versions)
        self.check_patch = check_patch
        self.latest = max(self.supported_versions, key=lambda v: parse_version(v) or (0, 0, 0))
        self._supported_series = {minor_series(v) for v in self.supported_versions}

    def is_supported(self, version: str) -> bool:
        if self.check_patch:
            return parse_version(version) in {parse_version(v) for v in self.supported_versions}
        return minor_series(version) in self._supported_series

    def classify(self, repository: RepositoryRef, files: FileMap) -> ScanFinding:
        go_mod = files.get("go.mod")
        if go_mod is None:
            return self.manifest_absent_finding(repository)

        version = extract_go_version(go_mod)
        if version is None:
            return self.unknown(repository, "no go directive in go.mod")

        current = parse_version(version)
        latest = parse_version(self.latest)
        if self.is_supported(version) or current > latest:
            return self.compliant(repository, current_version=version, latest_version=self.latest)

        lag = latest[1] - current[1] if current[0] == latest[0] else self.HIGH_SEVERITY_LAG
        severity = Severity.HIGH if lag >= self.HIGH_SEVERITY_LAG else Severity.MEDIUM
        return self.non_compliant(repository, severity, current_version=version,
                                  latest_version=self.latest, path="go.mod")

    def describe(self, finding: ScanFinding) -> str:
        return f"Update Go version from {finding.facts.get('current_version')} to {finding.facts.get('latest_version')}"

    def issue_title(self, finding: ScanFinding) -> str:
        return self.describe(finding)

    @property
    def issue_title_prefix(self) -> str:
        return "Update Go version from"

    def fact_columns(self) -> Dict[str, str]:
        return {'current_version': 'Current Version', 'latest_version': 'Latest Stable'}
