"""Optimistic write handling for the read-then-write ledgers."""

from __future__ import annotations

from typing import Callable, Optional, TypeVar

from . import log
from .data_manager import VersionMismatch
from .errors import ConflictError


T = TypeVar("T")


def run_with_retry(func: Callable[[], T], *, attempts: int, description: str) -> T:
    """
    Execute a read-then-write operation, re-running it on version conflicts.

    ``func`` must re-read the row on every call and pass the version it read
    to the store as ``expected_version``. A :class:`VersionMismatch` means a
    concurrent writer got there first; the read and the write are repeated
    against the newer row. Other errors propagate on the first occurrence.

    Raises:
        ConflictError: When every attempt lost the race.
    """
    last_exc: Optional[VersionMismatch] = None
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except VersionMismatch as exc:
            last_exc = exc
            log.warning(
                "Concurrent update while %s (attempt %d/%d): %s",
                description,
                attempt,
                attempts,
                exc,
            )
    raise ConflictError(
        f"Gave up {description} after {attempts} conflicting attempt(s)"
    ) from last_exc
