"""Replica precondition checks with per-run memoization.

A replica of a parent snapshot exists once at least one clone has been built
from that snapshot. Checking this is an expensive broker query, so a
ReplicaChecker answers each (image, snapshot) pair at most once. Create one
checker per planning run.

Lookups that fail are answered False: assuming a missing replica only adds
delay to the affected waves.
"""

import logging
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplicaKey:
    """Parent image and snapshot pair identifying a replica."""

    image_path: str
    snapshot_path: str

    def __str__(self) -> str:
        return f"{self.image_path}@{self.snapshot_path}"


@runtime_checkable
class ReplicaLookup(Protocol):
    """Backend query used to detect an existing replica."""

    def find_snapshot_clones(self, image_path: str, snapshot_path: str) -> list[str]:
        """Return ids of clones built from the given snapshot."""
        ...


class ReplicaChecker:
    """Memoized replica precondition checker.

    The cache maps ReplicaKey -> bool. A lock guards both the cache and the
    table of in-flight lookups, so concurrent callers asking for the same key
    share one backend query.
    """

    def __init__(self, lookup: ReplicaLookup, max_workers: int = 1):
        """Initialize replica checker.

        Args:
            lookup: Backend used to query snapshot clones
            max_workers: Thread pool size for prefetch (1 = sequential)
        """
        self.lookup = lookup
        self.max_workers = max(1, max_workers)
        self._cache: dict[ReplicaKey, bool] = {}
        self._in_flight: dict[ReplicaKey, Future[bool]] = {}
        self._lock = threading.Lock()
        self.query_count = 0

    def is_provisioned(self, image_path: str, snapshot_path: str) -> bool:
        """Check whether a replica exists for the image/snapshot pair."""
        return self.check(ReplicaKey(image_path, snapshot_path))

    def check(self, key: ReplicaKey) -> bool:
        """Return the memoized answer for key, querying the backend if absent."""
        with self._lock:
            if key in self._cache:
                return self._cache[key]
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[key] = future

        if not owner:
            return future.result()

        result = self._query(key)
        with self._lock:
            self._cache[key] = result
            del self._in_flight[key]
        future.set_result(result)
        return result

    def prefetch(self, keys: Iterable[ReplicaKey]) -> dict[ReplicaKey, bool]:
        """Resolve several keys, concurrently when max_workers > 1.

        Args:
            keys: Keys to resolve; duplicates are queried once

        Returns:
            Mapping of each distinct key to its answer
        """
        unique = list(dict.fromkeys(keys))
        if self.max_workers == 1 or len(unique) < 2:
            return {key: self.check(key) for key in unique}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(unique))) as executor:
            futures = {key: executor.submit(self.check, key) for key in unique}
            return {key: future.result() for key, future in futures.items()}

    def cached(self) -> dict[ReplicaKey, bool]:
        """Snapshot of answers resolved so far."""
        with self._lock:
            return dict(self._cache)

    def _query(self, key: ReplicaKey) -> bool:
        with self._lock:
            self.query_count += 1
        try:
            clone_ids = self.lookup.find_snapshot_clones(key.image_path, key.snapshot_path)
        except Exception as e:
            logger.warning(f"Replica lookup failed for {key}, assuming not provisioned: {e}")
            return False

        provisioned = len(clone_ids) > 0
        logger.debug(f"Replica for {key}: {'provisioned' if provisioned else 'missing'}")
        return provisioned


__all__ = ["ReplicaChecker", "ReplicaKey", "ReplicaLookup"]
