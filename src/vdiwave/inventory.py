"""Inventory model for linked-clone desktop pools.

This module defines the read-only records the scheduling engine plans over:
- Clone: a single desktop instance owned by a pool
- LinkedClonePool / FullClonePool: tagged pool variants
- InventorySource: protocol implemented by broker adapters

Only LinkedClonePool carries parent image and snapshot paths, so code that
needs a snapshot must narrow the pool type first.
"""

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


class InventoryError(Exception):
    """Raised when inventory records cannot be listed or parsed."""

    pass


class PoolPersistence(str, Enum):
    """Persistence kind of a desktop pool."""

    PERSISTENT = "persistent"
    NON_PERSISTENT = "non_persistent"

    @classmethod
    def parse(cls, value: str | None) -> "PoolPersistence":
        """Parse broker persistence strings, defaulting to non-persistent."""
        if value and value.strip().lower() in ("persistent", "dedicated"):
            return cls.PERSISTENT
        return cls.NON_PERSISTENT


@dataclass(frozen=True)
class Clone:
    """A desktop clone as reported by the broker."""

    id: str
    name: str
    pool_id: str
    is_linked_clone: bool = True
    in_pool: bool = True
    pending_task: str | None = None  # Name of an in-progress broker task, if any

    def is_idle(self) -> bool:
        """Check if the clone has no provisioning or maintenance task running."""
        return not self.pending_task


@dataclass(frozen=True)
class LinkedClonePool:
    """Pool whose desktops are linked clones of a parent snapshot."""

    id: str
    name: str
    parent_image_path: str
    parent_snapshot_path: str
    persistence: PoolPersistence = PoolPersistence.NON_PERSISTENT

    @property
    def is_linked_clone(self) -> bool:
        return True


@dataclass(frozen=True)
class FullClonePool:
    """Pool of full clones or manually added machines (no parent snapshot)."""

    id: str
    name: str
    persistence: PoolPersistence = PoolPersistence.PERSISTENT

    @property
    def is_linked_clone(self) -> bool:
        return False


Pool = LinkedClonePool | FullClonePool


@runtime_checkable
class InventorySource(Protocol):
    """Protocol for listing pools and clones from a broker."""

    def list_pools(self) -> list[Pool]:
        """Return every pool known to the broker."""
        ...

    def list_clones(self, pool_ids: Iterable[str] | None = None) -> list[Clone]:
        """Return clones eligible for maintenance.

        Args:
            pool_ids: Restrict to these pools (None = all pools)

        Returns:
            Clones that are in a pool and have no in-progress task
        """
        ...


def filter_idle_clones(clones: Iterable[Clone]) -> list[Clone]:
    """Drop clones that are outside a pool or busy with a broker task."""
    idle = []
    for clone in clones:
        if not clone.in_pool:
            logger.debug(f"Skipping clone {clone.name}: not in a pool")
            continue
        if not clone.is_idle():
            logger.debug(f"Skipping clone {clone.name}: task in progress ({clone.pending_task})")
            continue
        idle.append(clone)
    return idle


def group_clones_by_pool(clones: Iterable[Clone]) -> dict[str, list[Clone]]:
    """Group clones by owning pool id, preserving input order within a pool."""
    groups: dict[str, list[Clone]] = {}
    for clone in clones:
        groups.setdefault(clone.pool_id, []).append(clone)
    return groups


def sort_clones(clones: Clone | Sequence[Clone]) -> list[Clone]:
    """Return clones in stable name order.

    A single Clone is accepted and treated as a one-element pool.
    """
    if isinstance(clones, Clone):
        return [clones]
    return sorted(clones, key=lambda c: (c.name, c.id))


__all__ = [
    "Clone",
    "FullClonePool",
    "InventoryError",
    "InventorySource",
    "LinkedClonePool",
    "Pool",
    "PoolPersistence",
    "filter_idle_clones",
    "group_clones_by_pool",
    "sort_clones",
]
