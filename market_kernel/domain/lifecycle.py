"""
Lifecycle -- contract, offer and payout state machines.

Responsibility:
    Declares the explicit state enumerations and the workflow definitions
    that the ContractLedger and SettlementEngine consult before any state
    change, plus the pure ``effective_state`` derivation that folds contract
    expiry into the state enum.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by models/
    (for the enum column types), services/ and selectors/.

Invariants enforced:
    - Fulfilled, Expired and Cancelled are terminal for a contract.
    - Accepted and Rejected are terminal for an offer.
    - Expiry is never stored eagerly; it is derived on every read from
      ``end_time`` and the injected clock.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from market_kernel.domain.workflow import Guard, Transition, Workflow


class ContractState(str, Enum):
    """Open-contract lifecycle state."""

    OPEN = "open"
    PENDING_FULFILLMENT = "pending_fulfillment"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OfferState(str, Enum):
    """Fulfillment offer state."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class PayoutStatus(str, Enum):
    """Payout record status as confirmed by the payment processor."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionPayoutStatus(str, Enum):
    """Payout progress of a standalone sale transaction."""

    UNREQUESTED = "unrequested"
    COMPLETED = "completed"
    FAILED = "failed"


class PartyRole(str, Enum):
    """Role tag supplied by the identity collaborator."""

    BUYER = "buyer"
    FARMER = "farmer"


class PayoutSource(str, Enum):
    """What a payout settles."""

    CONTRACT = "contract"
    TRANSACTION = "transaction"


# States in which a contract still accepts offers.
ACCEPTING_STATES: frozenset[ContractState] = frozenset(
    {ContractState.OPEN, ContractState.PENDING_FULFILLMENT}
)


# -----------------------------------------------------------------------------
# Guards
# -----------------------------------------------------------------------------

BEFORE_END_TIME = Guard(
    name="before_end_time",
    description="Contract end time has not elapsed",
)

WITHIN_BOUNDS = Guard(
    name="within_bounds",
    description="Offer price <= max price and quantity <= requested quantity",
)

BUYER_ONLY = Guard(
    name="buyer_only",
    description="Caller is the buyer who posted the contract",
)


# -----------------------------------------------------------------------------
# Workflows
# -----------------------------------------------------------------------------

CONTRACT_WORKFLOW = Workflow(
    name="open_contract",
    description="Buyer purchase request negotiated through farmer offers",
    initial_state=ContractState.OPEN.value,
    states=tuple(s.value for s in ContractState),
    terminal_states=(
        ContractState.FULFILLED.value,
        ContractState.EXPIRED.value,
        ContractState.CANCELLED.value,
    ),
    transitions=(
        Transition("open", "pending_fulfillment", action="submit_offer", guard=WITHIN_BOUNDS),
        Transition(
            "pending_fulfillment", "pending_fulfillment",
            action="submit_offer", guard=WITHIN_BOUNDS,
        ),
        Transition(
            "pending_fulfillment", "fulfilled",
            action="accept_offer", guard=BUYER_ONLY, settles=True,
        ),
        Transition("open", "expired", action="expire", guard=BEFORE_END_TIME),
        Transition("pending_fulfillment", "expired", action="expire", guard=BEFORE_END_TIME),
        Transition("open", "cancelled", action="cancel", guard=BUYER_ONLY),
        Transition("pending_fulfillment", "cancelled", action="cancel", guard=BUYER_ONLY),
    ),
)

OFFER_WORKFLOW = Workflow(
    name="fulfillment_offer",
    description="Farmer offer against a single open contract",
    initial_state=OfferState.PENDING.value,
    states=tuple(s.value for s in OfferState),
    terminal_states=(OfferState.ACCEPTED.value, OfferState.REJECTED.value),
    transitions=(
        Transition("pending", "accepted", action="accept"),
        Transition("pending", "rejected", action="reject"),
    ),
)

PAYOUT_WORKFLOW = Workflow(
    name="payout",
    description="Payout issued through the external payment processor",
    initial_state=PayoutStatus.PENDING.value,
    states=tuple(s.value for s in PayoutStatus),
    terminal_states=(PayoutStatus.COMPLETED.value,),
    transitions=(
        Transition("pending", "completed", action="confirm"),
        Transition("pending", "failed", action="fail"),
        Transition("failed", "completed", action="confirm"),
        Transition("failed", "failed", action="fail"),
    ),
)


def effective_state(state: ContractState, end_time: datetime, now: datetime) -> ContractState:
    """
    Fold expiry into the stored state.

    A contract still accepting offers whose ``end_time`` is at or before
    ``now`` is Expired; every other state is returned unchanged.
    """
    state = ContractState(state)
    if state in ACCEPTING_STATES and end_time <= now:
        return ContractState.EXPIRED
    return state


def can_perform(workflow: Workflow, state: str | Enum, action: str) -> bool:
    """Whether ``action`` is a declared transition out of ``state``."""
    value = state.value if isinstance(state, Enum) else state
    return workflow.find_transition(value, action) is not None
