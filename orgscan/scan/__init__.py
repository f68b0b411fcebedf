from .aggregator import ScanAggregator
from .cancel import CancelToken
from .enumerator import RepositoryEnumerator
from .fetcher import RateLimitGate, RemoteContentFetcher
from .runner import RunOptions, RunResult, ScanRunner

__all__ = [
    'CancelToken',
    'RateLimitGate',
    'RemoteContentFetcher',
    'RepositoryEnumerator',
    'RunOptions',
    'RunResult',
    'ScanAggregator',
    'ScanRunner',
]
