"""Schedule construction from global waves.

Waves are sliced into sub-batches of at most 20 clones. Each sub-batch is
given a delay in minutes from the start of the run:

    delay = 5
    for wave in waves:
        for chunk in wave sliced by 20:
            schedule[delay] = chunk
            delay += chunk_step      # 10 for recompose, 5 for refresh
        delay += 5                   # gap between waves

Empty waves still add the wave gap, which is how a replica delay becomes
wall-clock time.
"""

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from vdiwave.inventory import Clone
from vdiwave.wave_partitioner import MaintenanceOperation

logger = logging.getLogger(__name__)

MAX_SUB_BATCH_SIZE = 20
INITIAL_DELAY_MINUTES = 5
WAVE_GAP_MINUTES = 5
CHUNK_STEP_MINUTES = {
    MaintenanceOperation.RECOMPOSE: 10,
    MaintenanceOperation.REFRESH: 5,
}


class ScheduleError(Exception):
    """Raised when a schedule would violate its ordering or size limits."""

    pass


@dataclass
class SubBatch:
    """Clones dispatched together at one delay."""

    delay_minutes: int
    wave_index: int
    clones: list[Clone]

    def group_by_pool(self) -> dict[str, list[Clone]]:
        """Clones keyed by pool id, in first-seen pool order."""
        groups: dict[str, list[Clone]] = {}
        for clone in self.clones:
            groups.setdefault(clone.pool_id, []).append(clone)
        return groups

    @property
    def clone_names(self) -> list[str]:
        return [c.name for c in self.clones]


@dataclass
class Schedule:
    """Mapping of delay minutes to sub-batches, in increasing delay order."""

    operation: MaintenanceOperation
    batches: dict[int, SubBatch] = field(default_factory=dict)

    def add(self, batch: SubBatch) -> None:
        if len(batch.clones) > MAX_SUB_BATCH_SIZE:
            raise ScheduleError(
                f"Sub-batch at {batch.delay_minutes}m has {len(batch.clones)} clones "
                f"(max {MAX_SUB_BATCH_SIZE})"
            )
        if self.batches and batch.delay_minutes <= max(self.batches):
            raise ScheduleError(f"Delay {batch.delay_minutes}m is not after the previous slot")
        self.batches[batch.delay_minutes] = batch

    def __iter__(self) -> Iterator[SubBatch]:
        for delay in sorted(self.batches):
            yield self.batches[delay]

    def __len__(self) -> int:
        return len(self.batches)

    def __bool__(self) -> bool:
        return bool(self.batches)

    @property
    def delays(self) -> list[int]:
        return sorted(self.batches)

    @property
    def clone_count(self) -> int:
        return sum(len(b.clones) for b in self.batches.values())


def chunk(clones: Sequence[Clone], size: int = MAX_SUB_BATCH_SIZE) -> Iterator[list[Clone]]:
    """Slice clones into consecutive lists of at most size."""
    for start in range(0, len(clones), size):
        yield list(clones[start : start + size])


def build_schedule(waves: Sequence[Sequence[Clone]], operation: MaintenanceOperation) -> Schedule:
    """Build a delay-indexed schedule from global waves.

    Args:
        waves: Clones per absolute wave index (empty waves allowed)
        operation: Operation being scheduled; selects the intra-wave step

    Returns:
        Schedule with strictly increasing delay keys
    """
    step = CHUNK_STEP_MINUTES[operation]
    schedule = Schedule(operation=operation)

    delay = INITIAL_DELAY_MINUTES
    for wave_index, wave in enumerate(waves):
        for clones in chunk(wave):
            schedule.add(SubBatch(delay_minutes=delay, wave_index=wave_index, clones=clones))
            delay += step
        delay += WAVE_GAP_MINUTES

    logger.debug(f"Built {operation.value} schedule: {len(schedule)} slots at {schedule.delays}")
    return schedule


__all__ = [
    "CHUNK_STEP_MINUTES",
    "INITIAL_DELAY_MINUTES",
    "MAX_SUB_BATCH_SIZE",
    "WAVE_GAP_MINUTES",
    "Schedule",
    "ScheduleError",
    "SubBatch",
    "build_schedule",
    "chunk",
]
