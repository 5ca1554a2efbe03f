"""
ContractLockRegistry -- in-process mutual exclusion per contract.

Responsibility:
    Serializes every state-changing operation on one contract inside this
    process: offer submission, acceptance, cancellation and the matching
    pass's notified-party bookkeeping.  Operations on different contracts
    never contend.

Architecture position:
    Kernel > Services -- concurrency infrastructure.  Held by
    MarketplaceService around a whole transaction, commit included.

Invariants enforced:
    - At most one holder per contract id at any time.
    - Lock entries are reference counted and dropped when the last holder
      or waiter leaves, so the registry does not grow with the number of
      contracts ever touched.

Non-goals:
    - Cross-process exclusion.  That is provided by the database:
      SELECT ... FOR UPDATE on the contract row and the conditional
      UPDATE used by accept_offer.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID


class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.refs = 0


class ContractLockRegistry:
    """Per-contract locks keyed by contract id."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[UUID, _Entry] = {}

    @contextmanager
    def hold(self, contract_id: UUID) -> Iterator[None]:
        """Block until the contract's lock is free, hold it for the block."""
        with self._guard:
            entry = self._entries.get(contract_id)
            if entry is None:
                entry = self._entries[contract_id] = _Entry()
            entry.refs += 1

        entry.lock.acquire()
        try:
            yield
        finally:
            entry.lock.release()
            with self._guard:
                entry.refs -= 1
                if entry.refs == 0:
                    del self._entries[contract_id]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)
