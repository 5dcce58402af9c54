"""Sample size progress derived from an experiment's counters.

The counter itself lives on the experiments row and is only bumped by
store.increment_sample_size().
"""
from typing import Optional


def completion_percentage(current: Optional[int], minimum: Optional[int]) -> float:
    """Share of the target sample collected, capped at 100. 0 when no target is set."""
    if not minimum:
        return 0.0
    return min(100.0, (current or 0) / minimum * 100.0)


def has_reached_minimum(current: Optional[int], minimum: Optional[int]) -> bool:
    # No target configured means there's nothing to wait for
    if minimum is None:
        return True
    return (current or 0) >= minimum

