"""Compensation log for multi-step writes.

The record store has no multi-sheet commit, so a workflow that writes to
several collections records each committed step together with the inverse
operation that would undo it. Nothing runs automatically: when a later step
fails the log travels inside
:class:`~shop_ledger.errors.PartialCompletionError` and a higher layer decides
whether to call :meth:`CompensationLog.compensate`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Tuple

from . import log


@dataclass(frozen=True)
class CompletedStep:
    """One committed step and the action that reverses it."""

    name: str
    description: str
    undo: Callable[[], object] = field(repr=False, compare=False)


class CompensationLog:
    """Ordered record of the committed steps of one operation."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self._steps: List[CompletedStep] = []
        self._compensated: List[str] = []

    def record(self, name: str, description: str, undo: Callable[[], object]) -> CompletedStep:
        step = CompletedStep(name=name, description=description, undo=undo)
        self._steps.append(step)
        log.debug("%s: step '%s' committed (%s)", self.operation, name, description)
        return step

    @property
    def completed_steps(self) -> Tuple[str, ...]:
        return tuple(step.name for step in self._steps)

    @property
    def compensated_steps(self) -> Tuple[str, ...]:
        return tuple(self._compensated)

    def __len__(self) -> int:
        return len(self._steps)

    def compensate(self) -> Tuple[str, ...]:
        """Undo the committed steps, newest first.

        Each step is removed from the log once its inverse succeeded. If an
        inverse raises, the error propagates and the remaining steps stay in
        the log, so calling ``compensate`` again resumes where it stopped.

        Returns:
            tuple[str, ...]: Names of the steps undone by this call.
        """
        undone: List[str] = []
        while self._steps:
            step = self._steps[-1]
            log.info("%s: compensating step '%s' (%s)", self.operation, step.name, step.description)
            step.undo()
            self._steps.pop()
            self._compensated.append(step.name)
            undone.append(step.name)
        return tuple(undone)
