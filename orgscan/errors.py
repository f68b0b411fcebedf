"""
Exception types shared by the scanning pipeline.
"""
from typing import Optional


class OrgScanError(Exception):
    """Base class for all orgscan errors."""


class ProviderError(OrgScanError):
    """The remote provider answered with an error status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """A provider call failed in a way that may succeed on retry (5xx, timeout, reset)."""


class RateLimitError(TransientProviderError):
    """The provider refused the call until ``reset_at`` (epoch seconds)."""

    def __init__(self, message: str, reset_at: float, status_code: Optional[int] = 403):
        super().__init__(message, status_code=status_code)
        self.reset_at = reset_at


class FetchError(OrgScanError):
    """Retries for a single file were exhausted."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class CacheCorruptionError(OrgScanError):
    """A cache partition file could not be parsed."""


class IncompleteReportError(OrgScanError):
    """A partial report was handed to a step that only accepts complete ones."""


class OperationalFailure(OrgScanError):
    """Fatal failure (bad credentials, unusable cache directory) that aborts the run."""


class ScanCancelled(OrgScanError):
    """The run was cancelled (signal or deadline) while work was in flight."""
