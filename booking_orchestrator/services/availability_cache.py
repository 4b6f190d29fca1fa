"""
Short-lived read cache for public availability lookups.

Entries are keyed by car id and expire after a few seconds, so a stale
entry on another API instance is bounded by the TTL. Cancellation
invalidates the car's entries immediately on the instance that performed it.
"""

import threading
import time
from datetime import date
from typing import Dict, Optional, Tuple

CacheKey = Tuple[str, date, date]


class AvailabilityCache:
    def __init__(self, ttl_seconds: float = 30.0):
        self.ttl_seconds = ttl_seconds
        self._entries: Dict[CacheKey, Tuple[float, Dict[date, str]]] = {}
        self._lock = threading.Lock()

    def get(self, car_id: str, start: date, end: date) -> Optional[Dict[date, str]]:
        key = (car_id, start, end)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if time.monotonic() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, car_id: str, start: date, end: date, value: Dict[date, str]) -> None:
        with self._lock:
            self._entries[(car_id, start, end)] = (time.monotonic(), value)

    def invalidate_car(self, car_id: str) -> int:
        """Drop every cached range for a car; returns the number of entries removed"""
        with self._lock:
            keys = [k for k in self._entries if k[0] == car_id]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


availability_cache = AvailabilityCache()
