"""Run leases: at most one driver per workflow run.

The engine acquires `lease_key(run_id)` before driving a run, refreshes it
while nodes execute, and releases it when `run()` returns. Losing the lease
cancels the run.
"""

from __future__ import annotations

import threading
from typing import Protocol


def lease_key(run_id: str) -> str:
    return f"workflow:{run_id}"


class RunLease(Protocol):
    async def acquire(self, key: str) -> bool:
        """Take the lease for `key`; False when another owner holds it."""

    async def refresh(self, key: str) -> bool:
        """Extend the lease; False once it is no longer ours."""

    async def release(self, key: str) -> None:
        """Give the lease back if we still own it."""

    async def close(self) -> None:
        """Release resources held by the lease provider."""


class NoopRunLease:
    """Single-process mode: the engine itself refuses to drive a run twice."""

    async def acquire(self, key: str) -> bool:  # noqa: ARG002
        return True

    async def refresh(self, key: str) -> bool:  # noqa: ARG002
        return True

    async def release(self, key: str) -> None:  # noqa: ARG002
        return None

    async def close(self) -> None:
        return None


class LocalRunLease:
    """Owner-tracking lease shared by several engines in one process.

    Useful when more than one engine points at the same file store. `revoke`
    drops a lease as if it had expired.
    """

    def __init__(self, owner_id: str, holders: dict[str, str] | None = None):
        self.owner_id = owner_id
        self._holders = holders if holders is not None else {}
        self._lock = threading.Lock()

    def for_owner(self, owner_id: str) -> "LocalRunLease":
        """Return a lease for another owner competing over the same keys."""
        lease = LocalRunLease(owner_id, self._holders)
        lease._lock = self._lock
        return lease

    async def acquire(self, key: str) -> bool:
        with self._lock:
            holder = self._holders.setdefault(key, self.owner_id)
            return holder == self.owner_id

    async def refresh(self, key: str) -> bool:
        with self._lock:
            return self._holders.get(key) == self.owner_id

    async def release(self, key: str) -> None:
        with self._lock:
            if self._holders.get(key) == self.owner_id:
                del self._holders[key]

    def revoke(self, key: str) -> None:
        with self._lock:
            self._holders.pop(key, None)

    def holder(self, key: str) -> str | None:
        with self._lock:
            return self._holders.get(key)

    async def close(self) -> None:
        return None
