"""Step selection helpers used by the FSM."""
from __future__ import annotations

from typing import List, Optional, Sequence

from stepwise.src.utils.models import Step


def next_executable(steps: Sequence[Step], after_index: int) -> Optional[int]:
    """Index of the first non-diagnostic step after ``after_index``, or None."""
    for index in range(max(after_index + 1, 0), len(steps)):
        if not steps[index].is_diagnostic:
            return index
    return None


def needs_refinement(step: Step) -> bool:
    return step.needs_refinement


def skipped_diagnostics(steps: Sequence[Step], after_index: int, next_index: Optional[int]) -> bool:
    """True when moving from ``after_index`` to ``next_index`` passes a diagnostic step."""
    stop = len(steps) if next_index is None else next_index
    return any(steps[index].is_diagnostic for index in range(max(after_index + 1, 0), stop))


def visible_steps(steps: Sequence[Step]) -> List[Step]:
    return [step for step in steps if not step.is_diagnostic]


def visible_position(steps: Sequence[Step], index: int) -> int:
    """Position of ``steps[index]`` among the visible steps, -1 when none."""
    if index < 0 or index >= len(steps):
        return -1
    return sum(1 for step in steps[: index + 1] if not step.is_diagnostic) - 1
