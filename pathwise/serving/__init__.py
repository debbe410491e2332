"""
Serving - response cache, request coalescing, route gate, compression.
"""

from .batching import RequestCoalescer
from .cache import AdaptiveCache, CacheEntry, CacheStats, cache_key
from .compression import compress_response, should_compress
from .routes import RouteFilter

__all__ = [
    "RequestCoalescer",
    "AdaptiveCache",
    "CacheEntry",
    "CacheStats",
    "cache_key",
    "compress_response",
    "should_compress",
    "RouteFilter",
]
