"""
cache.py
--------
LabResults — Lab Order Result Entry — Response Cache
----------------------------------------------------
In-process cache of REST reads keyed by request URL, shared by every request
in the process.  ``OpenMRSClient`` reads encounters and patient order
listings through it.  After results are saved the patient's order listings
(every key under ``<rest>/order?patient=<uuid>``) and the order's encounter
are dropped so the next read reflects the completed, discontinued order.

Keys belonging to other patients are never touched.  Entries are bounded in
number and expire after ``ttl`` seconds (``OPENMRS_CACHE_TTL`` in main.py).

Project: LabResults — Lab Order Result Entry
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, List, Optional

from cachetools import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 1000  # max cached responses
DEFAULT_TTL = 600        # seconds


class ResponseCache:
    """Thread-safe, bounded, URL-keyed cache with predicate-based invalidation."""

    def __init__(self, maxsize: int = DEFAULT_MAX_SIZE, ttl: float = DEFAULT_TTL) -> None:
        self._entries: TTLCache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = value

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def invalidate(self, predicate: Callable[[str], bool]) -> List[str]:
        """
        Drop every entry whose key satisfies *predicate*.

        Returns:
            The keys that were dropped.
        """
        with self._lock:
            dropped = [key for key in list(self._entries.keys()) if predicate(key)]
            for key in dropped:
                self._entries.pop(key, None)
        return dropped

    def invalidate_query(self, base: str) -> List[str]:
        """
        Drop *base* itself and every key that extends its query string
        (``base&...``).  ``...?patient=p1`` does not match ``...?patient=p10``.
        """
        dropped = self.invalidate(lambda key: key == base or key.startswith(base + "&"))
        logger.debug("cache: dropped %d key(s) under %s", len(dropped), base)
        return dropped
