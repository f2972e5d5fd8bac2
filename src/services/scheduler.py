"""
Rotation math for bounded invocations.

List rotation walks a fixed list one slice per run; time-slot rotation
maps wall-clock time onto one of N stages.
"""
import math
from typing import List, Sequence, TypeVar

T = TypeVar("T")


def rotation_length(item_count: int, per_run: int = 1) -> int:
    """Number of runs needed to cover every item once."""
    if item_count <= 0:
        return 0
    return math.ceil(item_count / max(1, per_run))


def list_rotation_index(position: int, length: int) -> int:
    if length <= 0:
        raise ValueError("Cannot rotate over an empty list")
    return position % length


def list_rotation_slice(items: Sequence[T], position: int, per_run: int = 1) -> List[T]:
    """
    Slice of items selected for the given run position.
    With per_run=1 this is simply items[position % len(items)].
    """
    if not items:
        return []
    per_run = max(1, per_run)
    index = list_rotation_index(position, rotation_length(len(items), per_run))
    return list(items[index * per_run:(index + 1) * per_run])


def time_slot_index(now: float, slot_minutes: int, stage_count: int) -> int:
    """
    Stage index for the slot containing `now` (epoch seconds).

    Minutes are counted from the epoch rather than from the top of the
    hour so every stage stays reachable when stage_count does not divide 60.
    """
    if stage_count <= 0:
        raise ValueError("stage_count must be positive")
    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")
    epoch_minutes = int(now // 60)
    return (epoch_minutes // slot_minutes) % stage_count


def next_tick(now: float, slot_minutes: int) -> float:
    """Epoch seconds of the next slot boundary after `now`."""
    slot_seconds = slot_minutes * 60
    return (math.floor(now / slot_seconds) + 1) * slot_seconds
