from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

from safeguard.schemas.detection import ContextFactors
from safeguard.services.interfaces import ContextSource

logger = logging.getLogger(__name__)


class ContextService:
    """
    Read-through cache over the platform's context API.
    At most ``max_entries`` users are cached, oldest evicted first.

    Any failure (timeout, transport error, bad payload) yields ``None`` so the
    detection engine proceeds without a context adjustment.
    """

    def __init__(
        self,
        source: Optional[ContextSource],
        *,
        timeout: float = 2.0,
        ttl_seconds: float = 60.0,
        max_entries: int = 1000,
    ) -> None:
        self._source = source
        self._timeout = timeout
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._cache: Dict[str, Tuple[float, ContextFactors]] = {}

    async def get_context(self, user_id: str, conversation_id: str) -> Optional[ContextFactors]:
        if self._source is None:
            return None

        cached = self._cache.get(user_id)
        if cached and time.monotonic() - cached[0] < self._ttl:
            return cached[1]

        try:
            context = await asyncio.wait_for(
                self._source.fetch_context(user_id, conversation_id), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning("[context] fetch for user %s timed out", user_id)
            return None
        except Exception as exc:
            logger.warning("[context] fetch for user %s failed: %s", user_id, exc)
            return None

        if context is not None:
            self._store(user_id, context)
        return context

    def _store(self, user_id: str, context: ContextFactors) -> None:
        now = time.monotonic()
        # re-inserting keeps dict order oldest first
        self._cache.pop(user_id, None)
        self._cache[user_id] = (now, context)
        if len(self._cache) <= self._max_entries:
            return
        for stale in [uid for uid, (at, _) in self._cache.items() if now - at >= self._ttl]:
            del self._cache[stale]
        while len(self._cache) > self._max_entries:
            del self._cache[next(iter(self._cache))]

    def invalidate(self, user_id: Optional[str] = None) -> None:
        if user_id is None:
            self._cache.clear()
        else:
            self._cache.pop(user_id, None)
