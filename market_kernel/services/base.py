"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service in the kernel.  Concrete services receive a
    SQLAlchemy ``Session`` and persist with ``session.flush()``, never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    - Transaction boundaries: services flush within the caller's
      transaction and never commit or roll back the outer transaction.
      MarketplaceService (or a test) owns commit/rollback.  A service may
      open a SAVEPOINT (``session.begin_nested()``) to undo its own partial
      work, as ContractLedger.accept_offer does on settlement failure.
"""

from abc import ABC

from sqlalchemy.orm import Session


class BaseService(ABC):
    """
    Abstract base class for kernel write services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide list/report queries -- those belong in
          ``market_kernel/selectors/``.
    """

    def __init__(self, session: Session):
        self.session = session
