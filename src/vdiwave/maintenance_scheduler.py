"""Wave-scheduled recompose and refresh of linked-clone pools.

This module ties the planning pipeline together:

    Collecting -> Filtering -> Partitioning -> Scheduling -> Executing -> Done

Executing ends in Halted instead of Done when stop_on_error stops dispatch.

A run lists pools and clones, drops ineligible pools, resolves replica
state (recompose only), partitions clones into waves, builds a delay
schedule, then reports or dispatches it. A run with no eligible pools ends
at Filtering without a schedule.

Planning failures (listing inventory) are fatal and raised as
MaintenanceSchedulerError. Dispatch failures are recorded per slot unless
stop_on_error is set, in which case the run ends Halted and the
ScheduleExecutionError carries the PlanResult as `plan`.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from vdiwave.eligibility import PoolSelector, select_eligible_pools
from vdiwave.inventory import Clone, InventorySource, LinkedClonePool, Pool, group_clones_by_pool
from vdiwave.replica_checker import ReplicaChecker, ReplicaKey, ReplicaLookup
from vdiwave.schedule_builder import Schedule, build_schedule
from vdiwave.schedule_executor import (
    CommandIssuer,
    CommandResult,
    ScheduleExecutionError,
    ScheduleExecutor,
    SlotResult,
)
from vdiwave.wave_partitioner import MaintenanceOperation, WavePartitioner, WavePlan

logger = logging.getLogger(__name__)


class MaintenanceSchedulerError(Exception):
    """Raised when a run cannot be planned."""

    pass


class RunState(str, Enum):
    """Stages of a planning run, in order."""

    COLLECTING = "collecting"
    FILTERING = "filtering"
    PARTITIONING = "partitioning"
    SCHEDULING = "scheduling"
    EXECUTING = "executing"
    DONE = "done"
    HALTED = "halted"


_STATE_ORDER = list(RunState)
_TERMINAL_STATES = frozenset({RunState.DONE, RunState.HALTED})


@dataclass
class PlanResult:
    """Outcome of a recompose or refresh run."""

    operation: MaintenanceOperation
    simulated: bool = False
    state: RunState = RunState.COLLECTING
    pools: list[LinkedClonePool] = field(default_factory=list)
    wave_plan: WavePlan | None = None
    schedule: Schedule | None = None
    slots: list[SlotResult] = field(default_factory=list)
    replica_status: dict[ReplicaKey, bool] = field(default_factory=dict)
    message: str | None = None

    def advance(self, state: RunState) -> None:
        """Move to a later stage; stages never go backwards."""
        backwards = _STATE_ORDER.index(state) <= _STATE_ORDER.index(self.state)
        if self.state in _TERMINAL_STATES or backwards:
            raise MaintenanceSchedulerError(
                f"Invalid run transition: {self.state.value} -> {state.value}"
            )
        logger.debug(f"{self.operation.value} run: {self.state.value} -> {state.value}")
        self.state = state

    @property
    def halted(self) -> bool:
        return self.state is RunState.HALTED

    @property
    def has_schedule(self) -> bool:
        return self.schedule is not None and len(self.schedule) > 0

    @property
    def totals(self) -> CommandResult:
        """Counts summed across all dispatched slots."""
        total = CommandResult()
        for slot in self.slots:
            total = total + slot.counts
        return total

    @property
    def failed_slots(self) -> list[SlotResult]:
        return [s for s in self.slots if s.failed]


class MaintenanceScheduler:
    """Plan and dispatch wave-scheduled pool maintenance.

    The scheduler depends only on its three collaborators; connection and
    session handling belong to whoever builds them.
    """

    def __init__(
        self,
        inventory: InventorySource,
        replica_lookup: ReplicaLookup | None = None,
        issuer: CommandIssuer | None = None,
        replica_check_workers: int = 1,
    ):
        """Initialize scheduler.

        Args:
            inventory: Source of pools and clones
            replica_lookup: Backend replica query (required for recompose)
            issuer: Backend command interface (required unless simulating)
            replica_check_workers: Parallel replica lookups per run
        """
        self.inventory = inventory
        self.replica_lookup = replica_lookup
        self.issuer = issuer
        self.replica_check_workers = replica_check_workers

    def schedule_recompose(
        self,
        pools: str | Iterable[str | Pool] | None = "all",
        exclude: Iterable[str] = (),
        force_logoff: bool = False,
        stop_on_error: bool = False,
        simulate: bool = False,
        now: datetime | None = None,
        progress_callback: Callable[[SlotResult], None] | None = None,
    ) -> PlanResult:
        """Recompose pools onto their parent snapshot in staggered waves.

        Args:
            pools: "all" or an explicit list of pool ids / Pool objects
            exclude: Pool ids to leave untouched
            force_logoff: Log users off before recomposing
            stop_on_error: Halt dispatch at the first failing pool command
            simulate: Report the plan without dispatching
            now: Reference time for slot times
            progress_callback: Called with each finished slot

        Returns:
            PlanResult describing the schedule and dispatch outcome

        Raises:
            MaintenanceSchedulerError: If inventory cannot be listed
            ScheduleExecutionError: If stop_on_error halts dispatch
        """
        return self._run(
            MaintenanceOperation.RECOMPOSE,
            pools,
            exclude,
            force_logoff,
            stop_on_error,
            simulate,
            now,
            progress_callback,
        )

    def schedule_refresh(
        self,
        pools: str | Iterable[str | Pool] | None = "all",
        exclude: Iterable[str] = (),
        force_logoff: bool = False,
        stop_on_error: bool = False,
        simulate: bool = False,
        now: datetime | None = None,
        progress_callback: Callable[[SlotResult], None] | None = None,
    ) -> PlanResult:
        """Refresh pools in staggered waves. Same arguments as schedule_recompose."""
        return self._run(
            MaintenanceOperation.REFRESH,
            pools,
            exclude,
            force_logoff,
            stop_on_error,
            simulate,
            now,
            progress_callback,
        )

    def plan(
        self,
        operation: MaintenanceOperation,
        pools: str | Iterable[str | Pool] | None = "all",
        exclude: Iterable[str] = (),
        simulate: bool = True,
    ) -> PlanResult:
        """Run every stage up to Scheduling without dispatching.

        Returns:
            PlanResult in state SCHEDULING, or FILTERING if nothing is eligible
        """
        result = PlanResult(operation=operation, simulated=simulate)
        selector = PoolSelector.parse(pools)

        all_pools, clones_by_pool = self._collect(selector)

        result.advance(RunState.FILTERING)
        result.pools = select_eligible_pools(all_pools, clones_by_pool, selector, exclude)
        if not result.pools:
            result.message = f"No eligible pools found for {operation.value}"
            logger.info(result.message)
            return result

        result.advance(RunState.PARTITIONING)
        if operation.needs_replica:
            result.replica_status = self._resolve_replicas(result.pools)
        partitioner = WavePartitioner(operation)
        result.wave_plan = partitioner.partition(result.pools, clones_by_pool, result.replica_status)

        result.advance(RunState.SCHEDULING)
        result.schedule = build_schedule(result.wave_plan.waves, operation)
        logger.info(
            f"Planned {operation.value} of {result.schedule.clone_count} clone(s) "
            f"in {len(result.pools)} pool(s) over {len(result.schedule)} slot(s)"
        )
        return result

    def _run(
        self,
        operation: MaintenanceOperation,
        pools: str | Iterable[str | Pool] | None,
        exclude: Iterable[str],
        force_logoff: bool,
        stop_on_error: bool,
        simulate: bool,
        now: datetime | None,
        progress_callback: Callable[[SlotResult], None] | None,
    ) -> PlanResult:
        result = self.plan(operation, pools, exclude, simulate=simulate)
        if result.state is not RunState.SCHEDULING or result.schedule is None:
            return result

        result.advance(RunState.EXECUTING)
        executor = ScheduleExecutor(None if simulate else self.issuer)
        try:
            result.slots = executor.execute(
                result.schedule,
                {p.id: p for p in result.pools},
                force_logoff=force_logoff,
                stop_on_error=stop_on_error,
                simulate=simulate,
                now=now,
                progress_callback=progress_callback,
            )
        except ScheduleExecutionError as e:
            result.slots = e.results
            result.message = str(e)
            result.advance(RunState.HALTED)
            e.plan = result
            raise

        result.advance(RunState.DONE)
        return result

    def _collect(self, selector: PoolSelector) -> tuple[list[Pool], dict[str, list[Clone]]]:
        pool_filter = None if selector.selects_all else sorted(selector.pool_ids or ())
        try:
            all_pools = self.inventory.list_pools()
            clones = self.inventory.list_clones(pool_filter)
        except Exception as e:
            raise MaintenanceSchedulerError(f"Failed to list inventory: {e}") from e

        logger.debug(f"Collected {len(all_pools)} pool(s) and {len(clones)} clone(s)")
        return all_pools, group_clones_by_pool(clones)

    def _resolve_replicas(self, pools: list[LinkedClonePool]) -> dict[ReplicaKey, bool]:
        if self.replica_lookup is None:
            raise MaintenanceSchedulerError("Recompose requires a replica lookup backend")

        checker = ReplicaChecker(self.replica_lookup, max_workers=self.replica_check_workers)
        keys = [ReplicaKey(p.parent_image_path, p.parent_snapshot_path) for p in pools]
        status = checker.prefetch(keys)
        logger.debug(f"Resolved {len(status)} replica key(s) with {checker.query_count} lookup(s)")
        return status


__all__ = [
    "MaintenanceScheduler",
    "MaintenanceSchedulerError",
    "PlanResult",
    "RunState",
]
