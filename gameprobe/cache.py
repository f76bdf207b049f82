# cache.py - Time limited store for probe results
# Copyright (C) 2016-2023 Lloyd Dilley, Felix Ern (MindSolve)
# http://www.dilley.me/
#
# Secondary optimization and customization are carried out by @molanp.
#
# This program is free software; you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation; either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License along
# with this program; if not, write to the Free Software Foundation, Inc.,
# 51 Franklin Street, Fifth Floor, Boston, MA 02110-1301 USA.
from dataclasses import dataclass, replace
import logging
import time
from typing import Callable, Hashable

from .models import ProbeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    result: ProbeResult
    captured_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.captured_at < self.ttl


class ResultCache:
    """
    Keyed store of probe results with a single TTL.

    Entries are never changed in place, a write always replaces the whole entry.
    Everything runs on one event loop, so no locking is needed.
    """

    NATIVE_TTL = 30
    """seconds a natively probed result stays fresh"""
    FALLBACK_TTL = 60
    """seconds a result from the HTTP aggregator stays fresh"""

    def __init__(self, ttl: float = NATIVE_TTL, clock: Callable[[], float] = time.time) -> None:
        """
        :param ttl: Seconds an entry is served without probing again
        :param clock: Returns the current unix time, replaceable in tests
        """
        self.ttl = ttl
        self.clock = clock
        self._store: dict[Hashable, CacheEntry] = {}

    def get(self, key: Hashable) -> CacheEntry | None:
        """Return the entry if it exists and is still fresh."""
        entry = self._store.get(key)
        if entry is None or not entry.is_fresh(self.clock()):
            return None
        return entry

    def peek(self, key: Hashable) -> CacheEntry | None:
        """Return the entry whether it is fresh or not."""
        return self._store.get(key)

    def put(self, key: Hashable, result: ProbeResult) -> CacheEntry:
        now = self.clock()
        entry = CacheEntry(result=replace(result, captured_at=now), captured_at=now, ttl=self.ttl)
        self._store[key] = entry
        return entry

    def stale(self, key: Hashable, error: str) -> ProbeResult | None:
        """
        Re-issue the last known result for `key` after a failed probe.

        :return: The old result marked offline and stale, or None if nothing is cached
        """
        entry = self._store.get(key)
        if entry is None:
            return None
        logger.debug("Serving stale data for %s captured at %s", key, entry.captured_at)
        return entry.result.mark_stale(error)

    def clear(self) -> None:
        self._store.clear()

    def stats(self) -> dict:
        return {"entries": len(self._store), "keys": list(self._store)}

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._store
