"""Wave partitioning of pool clones.

Each eligible pool is split into floor(size / 30) + 2 groups by position in
name order. Group 0 lands in wave 0; later groups are pushed back by the
pool's replica delay so that a missing replica has time to provision before
the bulk of the pool is cloned from it. Waves are global: clones of every
pool that land on the same wave index are merged.

Partitioning is a pure computation. Replica answers are resolved beforehand
and passed in as a mapping.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from vdiwave.inventory import Clone, LinkedClonePool, sort_clones
from vdiwave.replica_checker import ReplicaKey

logger = logging.getLogger(__name__)

GROUP_SIZE_DIVISOR = 30
MIN_GROUP_COUNT = 2
REPLICA_DELAY_BUDGET = 15
REPLICA_DELAY_FLOOR = 3


class MaintenanceOperation(str, Enum):
    """Bulk maintenance operations supported by the scheduler."""

    RECOMPOSE = "recompose"
    REFRESH = "refresh"

    @property
    def needs_replica(self) -> bool:
        """Recompose clones from a (possibly new) snapshot; refresh never does."""
        return self is MaintenanceOperation.RECOMPOSE


def compute_group_count(size: int) -> int:
    """Number of groups for a pool of size clones (at least 2)."""
    return max(size, 1) // GROUP_SIZE_DIVISOR + MIN_GROUP_COUNT


def compute_replica_delay(pool_count: int, provisioned: bool) -> int:
    """Wave-slot shift applied to every group after the first.

    Args:
        pool_count: Number of pools in this run
        provisioned: Whether the pool's replica already exists

    Returns:
        0 when provisioned, otherwise floor(15 / pool_count) + 3

    Note:
        pool_count counts every pool in the run, including pools whose
        replica already exists. One unprovisioned pool among many therefore
        gets a small shift.
    """
    if provisioned:
        return 0
    if pool_count < 1:
        raise ValueError(f"pool_count must be >= 1, got {pool_count}")
    return REPLICA_DELAY_BUDGET // pool_count + REPLICA_DELAY_FLOOR


def assign_group_index(position: int, size: int, group_count: int) -> int:
    """Group of the clone at position, i.e. floor(position / (size / group_count))."""
    return position * group_count // size


def shift_group(group: int, replica_delay: int) -> int:
    """Absolute wave index of a pool-relative group."""
    return group if group == 0 else group + replica_delay


@dataclass
class PoolWavePlan:
    """Wave assignment for a single pool."""

    pool_id: str
    size: int
    group_count: int
    replica_delay: int
    waves: dict[int, list[Clone]] = field(default_factory=dict)  # absolute wave index -> clones

    def wave_indexes(self) -> list[int]:
        return sorted(self.waves)


@dataclass
class WavePlan:
    """Global wave assignment across all pools of a run."""

    waves: list[list[Clone]]
    pools: list[PoolWavePlan]

    @property
    def clone_count(self) -> int:
        return sum(len(w) for w in self.waves)


class WavePartitioner:
    """Split eligible pools into global waves."""

    def __init__(self, operation: MaintenanceOperation):
        """Initialize partitioner.

        Args:
            operation: Operation being planned; refresh ignores replica state
        """
        self.operation = operation

    def partition_pool(
        self,
        pool_id: str,
        clones: Clone | Sequence[Clone],
        replica_delay: int = 0,
    ) -> PoolWavePlan:
        """Assign one pool's clones to absolute wave indexes.

        Args:
            pool_id: Pool identifier
            clones: Pool clones (a single Clone counts as a pool of one)
            replica_delay: Shift for every group after group 0

        Returns:
            PoolWavePlan for the pool
        """
        ordered = sort_clones(clones)
        size = max(len(ordered), 1)
        group_count = compute_group_count(size)

        plan = PoolWavePlan(
            pool_id=pool_id,
            size=len(ordered),
            group_count=group_count,
            replica_delay=replica_delay,
        )
        for position, clone in enumerate(ordered):
            group = assign_group_index(position, size, group_count)
            plan.waves.setdefault(shift_group(group, replica_delay), []).append(clone)

        logger.debug(
            f"Pool {pool_id}: {plan.size} clones, {group_count} groups, "
            f"replica delay {replica_delay}, waves {plan.wave_indexes()}"
        )
        return plan

    def partition(
        self,
        pools: Sequence[LinkedClonePool],
        clones_by_pool: Mapping[str, Sequence[Clone]],
        replica_status: Mapping[ReplicaKey, bool] | None = None,
    ) -> WavePlan:
        """Partition every pool and merge the result into global waves.

        Args:
            pools: Eligible pools, in the order their clones should be merged
            clones_by_pool: Fleet clones grouped by pool id
            replica_status: Replica answers keyed by (image, snapshot);
                missing keys count as not provisioned. Ignored for refresh.

        Returns:
            WavePlan whose waves list is indexed by absolute wave index
        """
        replica_status = replica_status or {}
        pool_count = len(pools)

        pool_plans: list[PoolWavePlan] = []
        waves: list[list[Clone]] = []
        for pool in pools:
            replica_delay = 0
            if self.operation.needs_replica:
                key = ReplicaKey(pool.parent_image_path, pool.parent_snapshot_path)
                replica_delay = compute_replica_delay(pool_count, replica_status.get(key, False))

            plan = self.partition_pool(pool.id, clones_by_pool.get(pool.id, []), replica_delay)
            pool_plans.append(plan)

            for index in plan.wave_indexes():
                while len(waves) <= index:
                    waves.append([])
                waves[index].extend(plan.waves[index])

        return WavePlan(waves=waves, pools=pool_plans)


__all__ = [
    "MaintenanceOperation",
    "PoolWavePlan",
    "WavePartitioner",
    "WavePlan",
    "assign_group_index",
    "compute_group_count",
    "compute_replica_delay",
    "shift_group",
]
