"""
Detects container builds based on an unsupported UBI image.
"""
import re
from typing import Dict, List

from ..models import RepositoryRef, ScanFinding, Severity
from .base import Detector, FileMap

# End-of-life base images
EOL_IMAGES = ("ubi7",)

_UBI_NAME = re.compile(r'(ubi\d+(?:-[a-z0-9]+)?)', re.IGNORECASE)


def from_lines(content: str) -> List[str]:
    return [line.strip() for line in content.splitlines() if re.match(r'^\s*FROM\s+', line, re.IGNORECASE)]


class UbiImageDetector(Detector):
    """Flags Dockerfiles/Containerfiles whose ``FROM`` uses the given UBI image.

    ``FROM ubi7``, ``FROM ubi7/ubi``, ``FROM registry.access.redhat.com/ubi7:latest``
    all match ``ubi7``; ``ubi7-minimal`` only matches when asked for explicitly.
    """

    detector_id = "ubi"
    required_paths = ("Dockerfile", "Containerfile")
    manifest_paths = ("Dockerfile", "Containerfile")
    no_manifest_partition = "no-containerfile"

    def __init__(self, image: str = "ubi7"):
        super().__init__()
        self.image = image.lower()
        self.title = f"{self.image} Base Image Usage"
        self._pattern = re.compile(
            r'^\s*FROM\s+(?:\S*/)?' + re.escape(self.image) + r'(?:[/:@\s]|$)',
            re.IGNORECASE | re.MULTILINE,
        )

    def classify(self, repository: RepositoryRef, files: FileMap) -> ScanFinding:
        if self.manifest_absent(files):
            return self.manifest_absent_finding(repository)

        matched_paths = []
        other_images = set()
        for path in self.required_paths:
            content = files.get(path)
            if content is None:
                continue
            if self._pattern.search(content):
                matched_paths.append(path)
            for line in from_lines(content):
                other_images.update(name.lower() for name in _UBI_NAME.findall(line))
        other_images.discard(self.image)

        if not matched_paths:
            return self.compliant(repository, images=", ".join(sorted(other_images)))
        severity = Severity.HIGH if self.image.split('-')[0] in EOL_IMAGES else Severity.MEDIUM
        return self.non_compliant(repository, severity, image=self.image, path=", ".join(matched_paths),
                                  other_images=", ".join(sorted(other_images)))

    def describe(self, finding: ScanFinding) -> str:
        return f"Migrate {finding.facts.get('path')} off {self.image}"

    def fact_columns(self) -> Dict[str, str]:
        return {'path': 'File', 'image': 'Image'}
