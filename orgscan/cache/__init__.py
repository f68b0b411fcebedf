from .store import CacheSnapshot, CacheStore
from .updater import CacheUpdater

__all__ = ['CacheSnapshot', 'CacheStore', 'CacheUpdater']
