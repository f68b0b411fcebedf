"""
Detects direct requirements on a deprecated or tracked Go module.
"""
import re
from typing import Dict, Optional

from ..models import RepositoryRef, ScanFinding, Severity
from .base import Detector, FileMap


def find_direct_requirement(go_mod: str, module: str) -> Optional[str]:
    """Return the required version of ``module`` if it is a direct dependency.

    Handles both ``require module v1.2.3`` and ``require ( ... )`` blocks and
    ignores lines marked ``// indirect``.
    """
    pattern = re.compile(r'^\s*(?:require\s+)?' + re.escape(module) + r'\s+(v\S+)(.*)$')
    in_block = False
    for line in go_mod.splitlines():
        stripped = line.strip()
        if stripped.startswith('require ('):
            in_block = True
            continue
        if in_block and stripped == ')':
            in_block = False
            continue
        if not in_block and not stripped.startswith('require '):
            continue
        match = pattern.match(line)
        if match and '// indirect' not in match.group(2):
            return match.group(1)
    return None


class DeprecatedModuleDetector(Detector):
    """Flags ``go.mod`` files with a direct requirement on ``module``."""

    required_paths = ("go.mod",)
    manifest_paths = ("go.mod",)
    no_manifest_partition = "no-gomod"

    def __init__(self, detector_id: str, module: str, replacement: str = "",
                 title: str = "", severity: Severity = Severity.MEDIUM, summary: str = ""):
        self.detector_id = detector_id
        self.module = module
        self.replacement = replacement
        self.title = title or f"Deprecated {module} Usage"
        self.severity = severity
        self.summary = summary
        super().__init__()

    def classify(self, repository: RepositoryRef, files: FileMap) -> ScanFinding:
        go_mod = files.get("go.mod")
        if go_mod is None:
            return self.manifest_absent_finding(repository)

        version = find_direct_requirement(go_mod, self.module)
        if version is None:
            return self.compliant(repository, module=self.module)
        return self.non_compliant(repository, self.severity, module=self.module, current_version=version,
                                  replacement=self.replacement, path="go.mod")

    def describe(self, finding: ScanFinding) -> str:
        if self.summary:
            return self.summary
        if self.replacement:
            return f"Replace deprecated {self.module} with {self.replacement}"
        return f"Remove deprecated {self.module}"

    def fact_columns(self) -> Dict[str, str]:
        return {'current_version': 'Version'}


def gomock_detector() -> DeprecatedModuleDetector:
    """github.com/golang/mock was archived in June 2023."""
    return DeprecatedModuleDetector(
        "gomock",
        module="github.com/golang/mock",
        replacement="go.uber.org/mock",
        title="Deprecated golang/mock Usage",
    )


def xcrypto_detector() -> DeprecatedModuleDetector:
    """Direct golang.org/x/crypto users, tracked for crypto library migrations."""
    return DeprecatedModuleDetector(
        "xcrypto",
        module="golang.org/x/crypto",
        title="Direct golang.org/x/crypto Usage",
        severity=Severity.INFO,
        summary="Review direct golang.org/x/crypto usage",
    )
