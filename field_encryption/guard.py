"""
Reentrancy guard for record encryption passes.

Save hooks can re-fire for the coordinate they are already processing (a
nested hook reacting to the encryptor's own write). Encrypting a value twice
wraps a placeholder in another placeholder, which can never be turned back into
an address, so a coordinate may only have one pass in flight at a time.

The guard is advisory, in-process state. It does not coordinate separate
processes; the record store's row-level update is the source of truth there.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Set

from .models import RecordCoordinate


class ReentrancyGuard:
    """Set of record coordinates currently being processed."""

    def __init__(self) -> None:
        self._in_flight: Set[RecordCoordinate] = set()
        self._lock = threading.Lock()

    def try_enter(self, coord: RecordCoordinate) -> bool:
        """Mark ``coord`` in flight. Returns False if it already was."""
        with self._lock:
            if coord in self._in_flight:
                return False
            self._in_flight.add(coord)
            return True

    def leave(self, coord: RecordCoordinate) -> None:
        """Release ``coord``. Releasing an unheld coordinate is a no-op."""
        with self._lock:
            self._in_flight.discard(coord)

    def is_held(self, coord: RecordCoordinate) -> bool:
        with self._lock:
            return coord in self._in_flight

    @contextmanager
    def hold(self, coord: RecordCoordinate) -> Iterator[bool]:
        """
        Scoped ``try_enter``/``leave``.

        Yields whether the coordinate was acquired. Only an acquiring scope
        releases it, on every exit path including exceptions.
        """
        acquired = self.try_enter(coord)
        try:
            yield acquired
        finally:
            if acquired:
                self.leave(coord)

    def __len__(self) -> int:
        with self._lock:
            return len(self._in_flight)
