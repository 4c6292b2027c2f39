"""Pool eligibility filtering for recompose and refresh runs.

A pool is eligible when it is selected, not excluded, a linked-clone pool
with a parent snapshot, and has at least one clone in the fleet.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum

from vdiwave.inventory import Clone, LinkedClonePool, Pool

logger = logging.getLogger(__name__)

ALL_POOLS = "all"


class IneligibleReason(str, Enum):
    """Why a pool was dropped from a run."""

    NOT_SELECTED = "not selected"
    EXCLUDED = "excluded"
    NOT_LINKED_CLONE = "not a linked-clone pool"
    NO_SNAPSHOT = "no parent snapshot"
    NO_CLONES = "no clones"


@dataclass
class PoolSelector:
    """Selection of pools for a run: all pools or an explicit list."""

    pool_ids: frozenset[str] | None = None  # None selects every pool

    @classmethod
    def parse(cls, pools: str | Iterable[str | Pool] | None) -> "PoolSelector":
        """Build a selector from "all", ids, or pool objects.

        Args:
            pools: "all" (or None), or an iterable of pool ids / Pool objects

        Returns:
            PoolSelector instance
        """
        if pools is None or (isinstance(pools, str) and pools.lower() == ALL_POOLS):
            return cls()
        if isinstance(pools, str):
            return cls(frozenset([pools]))
        ids = [p if isinstance(p, str) else p.id for p in pools]
        return cls(frozenset(ids))

    @property
    def selects_all(self) -> bool:
        return self.pool_ids is None

    def matches(self, pool: Pool) -> bool:
        return self.pool_ids is None or pool.id in self.pool_ids


def classify_pool(
    pool: Pool,
    selector: PoolSelector,
    exclude: frozenset[str],
    clones_by_pool: Mapping[str, Sequence[Clone]],
) -> IneligibleReason | None:
    """Return why pool is ineligible, or None if it is eligible."""
    if not selector.matches(pool):
        return IneligibleReason.NOT_SELECTED
    if pool.id in exclude:
        return IneligibleReason.EXCLUDED
    if not isinstance(pool, LinkedClonePool):
        return IneligibleReason.NOT_LINKED_CLONE
    if not pool.parent_snapshot_path:
        return IneligibleReason.NO_SNAPSHOT
    if not clones_by_pool.get(pool.id):
        return IneligibleReason.NO_CLONES
    return None


def select_eligible_pools(
    pools: Iterable[Pool],
    clones_by_pool: Mapping[str, Sequence[Clone]],
    selector: PoolSelector | None = None,
    exclude: Iterable[str] = (),
) -> list[LinkedClonePool]:
    """Narrow pools to those a recompose or refresh run should touch.

    Args:
        pools: Every pool known to the broker
        clones_by_pool: Fleet clones grouped by pool id
        selector: Pools requested by the caller (None = all)
        exclude: Pool ids to leave untouched

    Returns:
        Eligible linked-clone pools, ordered by pool id
    """
    selector = selector or PoolSelector()
    excluded = frozenset(exclude)

    eligible: list[LinkedClonePool] = []
    for pool in pools:
        reason = classify_pool(pool, selector, excluded, clones_by_pool)
        if reason is None:
            eligible.append(pool)  # type: ignore[arg-type]
        elif reason is not IneligibleReason.NOT_SELECTED:
            logger.debug(f"Pool {pool.id} skipped: {reason.value}")

    return sorted(eligible, key=lambda p: p.id)


__all__ = [
    "ALL_POOLS",
    "IneligibleReason",
    "PoolSelector",
    "classify_pool",
    "select_eligible_pools",
]
