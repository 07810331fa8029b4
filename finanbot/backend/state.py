from __future__ import annotations

from cachetools import TTLCache

from .config import settings

# Per-user dashboard snapshots; dropped whenever the user's data is reconciled.
dashboard_cache: TTLCache[str, dict] = TTLCache(maxsize=settings.api_cache_size, ttl=settings.api_cache_ttl)


def invalidate_user_cache(user_id: str) -> None:
    dashboard_cache.pop(user_id, None)
