from __future__ import annotations

from cachetools import TTLCache

from .config import settings

# Latest analysis per user for display reads; invalidated on every write.
analysis_cache: TTLCache[str, dict] = TTLCache(maxsize=settings.analysis_cache_size, ttl=settings.analysis_cache_ttl)
