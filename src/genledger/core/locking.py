"""Single-flight lock for passes that must never overlap with themselves.

The lock is advisory and non-blocking: it is checked and taken synchronously,
before the holder reaches its first await, so on a single event loop no other
coroutine can slip in between the check and the set. A second acquire while
held raises ``LockAlreadyHeldError`` instead of waiting, which lets callers
drop overlapping work and lets tests detect the overlap.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


class LockAlreadyHeldError(RuntimeError):
    """Raised when a single-flight lock is acquired while already held."""

    def __init__(self, name: str, holder: str | None):
        self.name = name
        self.holder = holder
        super().__init__(f"Lock '{name}' is already held by {holder or 'an unnamed holder'}")


class SingleFlightLock:
    """One-shot mutual exclusion for a named pass."""

    def __init__(self, name: str):
        self.name = name
        self._holder: str | None = None
        self._acquired_at: datetime | None = None
        self._held = False

    @property
    def locked(self) -> bool:
        return self._held

    @property
    def holder(self) -> str | None:
        return self._holder

    @property
    def acquired_at(self) -> datetime | None:
        return self._acquired_at

    def acquire(self, holder: str | None = None) -> None:
        """Take the lock.

        Raises:
            LockAlreadyHeldError: If the lock is currently held
        """
        if self._held:
            raise LockAlreadyHeldError(self.name, self._holder)
        self._held = True
        self._holder = holder
        self._acquired_at = datetime.now(timezone.utc)

    def release(self) -> None:
        """Release the lock (releasing an unheld lock is a no-op)."""
        self._held = False
        self._holder = None
        self._acquired_at = None

    @contextmanager
    def hold(self, holder: str | None = None) -> Iterator["SingleFlightLock"]:
        """Hold the lock for the duration of a ``with`` block.

        Usable around ``await`` expressions: the acquire happens synchronously
        when the block is entered.
        """
        self.acquire(holder)
        try:
            yield self
        finally:
            self.release()
