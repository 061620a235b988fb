from __future__ import annotations

from .cacheconfig import CacheConfig
from .cacheerrors import CacheError
from .cacheerrors import ConsistencyViolation
from .cacheerrors import DirectoryUnavailable
from .cacheerrors import NotFoundError
from .cacheerrors import StoreUnavailable
from .cacheerrors import TransientIOError
from .cachestore import CacheStore
from .scanner import Scanner

__all__ = [
    "CacheConfig",
    "CacheError",
    "CacheStore",
    "ConsistencyViolation",
    "DirectoryUnavailable",
    "NotFoundError",
    "Scanner",
    "StoreUnavailable",
    "TransientIOError",
]
