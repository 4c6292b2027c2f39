"""Schedule execution against the broker.

Walks a Schedule in increasing delay order. Each slot is either reported
(simulate) or dispatched as one command per pool, carrying the slot's
wall-clock time so the broker can enforce the timing itself.

Error handling:
- A pool command that raises is recorded on the slot and dispatch continues
- With stop_on_error, dispatch halts at the first failing pool command and
  ScheduleExecutionError is raised with the partial results
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, runtime_checkable

from vdiwave.inventory import Clone, LinkedClonePool
from vdiwave.schedule_builder import Schedule, SubBatch
from vdiwave.wave_partitioner import MaintenanceOperation

logger = logging.getLogger(__name__)


class ScheduleExecutionError(Exception):
    """Raised when dispatch halts because stop_on_error was requested."""

    def __init__(self, message: str, results: list["SlotResult"] | None = None):
        super().__init__(message)
        self.results = results or []
        # Set by MaintenanceScheduler to the halted PlanResult
        self.plan: Any = None


@dataclass
class CommandResult:
    """Counts returned by the broker for one maintenance command."""

    attempted: int = 0
    successful: int = 0
    unchanged: int = 0

    def __add__(self, other: "CommandResult") -> "CommandResult":
        return CommandResult(
            attempted=self.attempted + other.attempted,
            successful=self.successful + other.successful,
            unchanged=self.unchanged + other.unchanged,
        )


@runtime_checkable
class CommandIssuer(Protocol):
    """Backend that accepts recompose and refresh commands."""

    def recompose(
        self,
        clones: Sequence[Clone],
        image_path: str,
        snapshot_path: str,
        when: datetime,
        force_logoff: bool = False,
        stop_on_error: bool = False,
    ) -> CommandResult:
        """Schedule a recompose of clones onto image_path/snapshot_path at when."""
        ...

    def refresh(
        self,
        clones: Sequence[Clone],
        when: datetime,
        force_logoff: bool = False,
        stop_on_error: bool = False,
    ) -> CommandResult:
        """Schedule a refresh of clones at when."""
        ...


@dataclass
class SlotResult:
    """Outcome of one schedule slot."""

    delay_minutes: int
    scheduled_time: datetime
    clone_names: list[str]
    simulated: bool = False
    counts: CommandResult = field(default_factory=CommandResult)
    errors: list[tuple[str, str]] = field(default_factory=list)  # (pool_id, message)

    @property
    def attempted(self) -> int:
        return self.counts.attempted

    @property
    def successful(self) -> int:
        return self.counts.successful

    @property
    def unchanged(self) -> int:
        return self.counts.unchanged

    @property
    def failed(self) -> bool:
        return bool(self.errors)

    def format_summary(self) -> str:
        """Format one-line summary of the slot."""
        when = self.scheduled_time.strftime("%Y-%m-%d %H:%M")
        if self.simulated:
            return f"+{self.delay_minutes}m ({when}): {len(self.clone_names)} clone(s) planned"
        return (
            f"+{self.delay_minutes}m ({when}): Attempted: {self.attempted}, "
            f"Successful: {self.successful}, Unchanged: {self.unchanged}"
        )


class ScheduleExecutor:
    """Dispatch a schedule slot by slot."""

    def __init__(self, issuer: CommandIssuer | None = None):
        """Initialize executor.

        Args:
            issuer: Broker command backend (may be None when only simulating)
        """
        self.issuer = issuer

    def execute(
        self,
        schedule: Schedule,
        pools: Mapping[str, LinkedClonePool],
        force_logoff: bool = False,
        stop_on_error: bool = False,
        simulate: bool = False,
        now: datetime | None = None,
        progress_callback: Callable[[SlotResult], None] | None = None,
    ) -> list[SlotResult]:
        """Report or dispatch every slot of schedule.

        Args:
            schedule: Schedule to walk
            pools: Eligible pools keyed by id (for recompose targets)
            force_logoff: Log users off before the operation
            stop_on_error: Halt dispatch after the first failing pool command
            simulate: Report the plan without contacting the broker
            now: Reference time for slot times (default: current UTC time)
            progress_callback: Called with each finished SlotResult

        Returns:
            One SlotResult per slot, in delay order

        Raises:
            ScheduleExecutionError: If stop_on_error is set and a command fails
        """
        if not simulate and self.issuer is None:
            raise ScheduleExecutionError("No command issuer configured for dispatch")

        start = now or datetime.now(timezone.utc)
        results: list[SlotResult] = []

        for batch in schedule:
            when = start + timedelta(minutes=batch.delay_minutes)
            slot = SlotResult(
                delay_minutes=batch.delay_minutes,
                scheduled_time=when,
                clone_names=batch.clone_names,
                simulated=simulate,
            )
            results.append(slot)

            if simulate:
                logger.info(f"[simulate] {slot.format_summary()}: {', '.join(slot.clone_names)}")
            else:
                halted = self._dispatch_slot(
                    schedule.operation, batch, when, pools, slot, force_logoff, stop_on_error
                )
                logger.info(slot.format_summary())
                if halted:
                    pool_id, message = slot.errors[-1]
                    logger.error(f"Stopping dispatch at +{slot.delay_minutes}m: {message}")
                    if progress_callback:
                        progress_callback(slot)
                    raise ScheduleExecutionError(
                        f"{schedule.operation.value} of pool {pool_id} failed: {message}",
                        results=results,
                    )

            if progress_callback:
                progress_callback(slot)

        return results

    def _dispatch_slot(
        self,
        operation: MaintenanceOperation,
        batch: SubBatch,
        when: datetime,
        pools: Mapping[str, LinkedClonePool],
        slot: SlotResult,
        force_logoff: bool,
        stop_on_error: bool,
    ) -> bool:
        """Issue one command per pool in batch. Returns True if dispatch must halt."""
        for pool_id, clones in batch.group_by_pool().items():
            try:
                result = self._issue(
                    operation, clones, pools[pool_id], when, force_logoff, stop_on_error
                )
            except Exception as e:
                logger.warning(
                    f"{operation.value} of {len(clones)} clone(s) in pool {pool_id} failed: {e}"
                )
                slot.counts = slot.counts + CommandResult(attempted=len(clones))
                slot.errors.append((pool_id, str(e)))
                if stop_on_error:
                    return True
                continue

            # attempted is what we sent, not what the broker echoes back
            slot.counts = slot.counts + CommandResult(
                attempted=len(clones), successful=result.successful, unchanged=result.unchanged
            )
        return False

    def _issue(
        self,
        operation: MaintenanceOperation,
        clones: list[Clone],
        pool: LinkedClonePool,
        when: datetime,
        force_logoff: bool,
        stop_on_error: bool,
    ) -> CommandResult:
        assert self.issuer is not None
        if operation is MaintenanceOperation.RECOMPOSE:
            return self.issuer.recompose(
                clones,
                pool.parent_image_path,
                pool.parent_snapshot_path,
                when,
                force_logoff=force_logoff,
                stop_on_error=stop_on_error,
            )
        return self.issuer.refresh(
            clones, when, force_logoff=force_logoff, stop_on_error=stop_on_error
        )


__all__ = [
    "CommandIssuer",
    "CommandResult",
    "ScheduleExecutionError",
    "ScheduleExecutor",
    "SlotResult",
]
