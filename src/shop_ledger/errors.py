"""Exception hierarchy for the ledger-consistency core.

Ledger functions raise these unchanged; workflow handlers add
:class:`PartialCompletionError` when a multi-step run stops halfway.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .compensation import CompensationLog


class LedgerError(Exception):
    """Base class for every error surfaced by the shop ledger."""


class ValidationError(LedgerError, ValueError):
    """Raised when input is malformed or out of range. Nothing was written."""


class NotFoundError(LedgerError, KeyError):
    """Raised when a referenced product, account, posting or sale is unknown."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep messages readable.
        return str(self.args[0]) if self.args else ""


class ConflictError(LedgerError):
    """Raised on uniqueness violations, ambiguous names and lost write races."""


class StaleWorkbookError(ConflictError):
    """Raised when the workbook file changed on disk since it was loaded.

    Saving would overwrite the other writer's rows, so nothing is saved. The
    caller reloads the workbook and repeats its operation.
    """


class PartialCompletionError(LedgerError):
    """Raised when a multi-step operation failed after some steps committed.

    The error names the step that failed and the steps that already reached
    the store, and carries the compensation log so the caller can decide
    whether to complete the run manually or undo the committed steps.
    """

    def __init__(
        self,
        operation: str,
        *,
        failed_step: str,
        completed_steps: Sequence[str],
        record_id: Optional[str],
        compensation: "CompensationLog",
    ) -> None:
        self.operation = operation
        self.failed_step = failed_step
        self.completed_steps = tuple(completed_steps)
        self.record_id = record_id
        self.compensation = compensation
        super().__init__(
            f"{operation} stopped at step '{failed_step}' after completing "
            f"{', '.join(self.completed_steps) or 'no steps'} (record {record_id})"
        )


__all__ = [
    "LedgerError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "StaleWorkbookError",
    "PartialCompletionError",
]
