"""
Built-in detectors and the factory used by the command line.
"""
import logging
from typing import List, Optional, Sequence

import requests

from ..errors import OperationalFailure, ProviderError
from .base import Detector, FileMap
from .deprecated_module import DeprecatedModuleDetector, gomock_detector, xcrypto_detector
from .go_version import GoVersionDetector
from .golangci_lint import GolangciLintDetector
from .ubi import UbiImageDetector
from .versions import fetch_stable_go_versions

logger = logging.getLogger(__name__)

DETECTOR_IDS = ("go-version", "golangci-lint", "gomock", "ubi", "xcrypto")


def build_detectors(names: Sequence[str], api=None, check_minor: bool = False, ubi_image: str = "ubi7",
                    go_versions: Optional[Sequence[str]] = None,
                    golangci_latest: Optional[str] = None) -> List[Detector]:
    """Instantiate detectors by id, resolving any remote reference data they need.

    Args:
        names: Detector ids, or ``["all"]``
        api: GitHubAPI used to look up the latest golangci-lint release
        check_minor: Compare exact Go patch releases
        ubi_image: UBI image the ``ubi`` detector looks for
        go_versions: Supported Go versions (skips the go.dev lookup)
        golangci_latest: Latest golangci-lint version (skips the release lookup)

    Raises:
        OperationalFailure: if reference data cannot be fetched
        ValueError: for unknown detector ids
    """
    if 'all' in names:
        names = list(DETECTOR_IDS)
    unknown = [name for name in names if name not in DETECTOR_IDS]
    if unknown:
        raise ValueError(f"Unknown detector(s): {', '.join(unknown)}")

    detectors: List[Detector] = []
    for name in names:
        if name == "go-version":
            if go_versions is None:
                try:
                    go_versions = fetch_stable_go_versions()
                except requests.RequestException as e:
                    raise OperationalFailure(f"Cannot fetch supported Go versions: {e}") from e
            detectors.append(GoVersionDetector(go_versions, check_patch=check_minor))
        elif name == "golangci-lint":
            if golangci_latest is None:
                if api is None:
                    raise OperationalFailure("golangci-lint detector needs a GitHub client or a version")
                try:
                    golangci_latest = api.get_latest_release("golangci", "golangci-lint")
                except ProviderError as e:
                    raise OperationalFailure(f"Cannot fetch latest golangci-lint release: {e}") from e
                if not golangci_latest:
                    raise OperationalFailure("No golangci-lint release found")
                logger.info("Latest golangci-lint release: %s", golangci_latest)
            detectors.append(GolangciLintDetector(golangci_latest))
        elif name == "gomock":
            detectors.append(gomock_detector())
        elif name == "ubi":
            detectors.append(UbiImageDetector(ubi_image))
        elif name == "xcrypto":
            detectors.append(xcrypto_detector())
    return detectors


__all__ = [
    'DETECTOR_IDS',
    'Detector',
    'DeprecatedModuleDetector',
    'FileMap',
    'GoVersionDetector',
    'GolangciLintDetector',
    'UbiImageDetector',
    'build_detectors',
    'gomock_detector',
    'xcrypto_detector',
]
