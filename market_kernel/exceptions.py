"""
Typed Exception Hierarchy for the Market Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers of the marketplace (HTTP controllers, job runners, tests) must map
failures to responses without parsing message strings:
  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (contract_id, offer_id, amounts)

Example:
    try:
        marketplace.submit_offer(contract_id, farmer_id, 80, Money.of("9.50", "USD"))
    except PriceExceedsCeilingError as e:
        api_response(409, code=e.code, max_price=str(e.max_price))

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from MarketKernelError:

    MarketKernelError (base)
    |
    +-- InputValidationError            no state change, always recoverable
    |   +-- InvalidInputError
    |   +-- PriceExceedsCeilingError
    |   +-- QuantityExceedsRequestedError
    |
    +-- AuthorizationError              caller lacks rights over the entity
    |   +-- ForbiddenError
    |
    +-- StateConflictError              invalid for the current lifecycle state
    |   +-- ContractNotOpenError
    |   +-- AlreadyFulfilledError
    |   +-- ContractNotFulfilledError
    |   +-- AlreadyPaidError
    |
    +-- NotFoundError
    |   +-- ContractNotFoundError
    |   +-- OfferNotFoundError
    |   +-- TransactionNotFoundError
    |   +-- UnknownRoleError
    |
    +-- CollaboratorUnavailableError    external dependency failed
        +-- LookupFailedError           best-effort path (matching)
        +-- CollaboratorTimeoutError
        +-- SettlementError             critical path (payment issuance)
            +-- SettlementFailedError
            +-- PayoutRetryableError
            +-- PayoutUnavailableError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | INVALID_INPUT               | Malformed or out-of-range request data
                | PRICE_EXCEEDS_CEILING       | Offer price above contract max price
                | QUANTITY_EXCEEDS_REQUESTED  | Offer quantity above contract quantity
----------------|-----------------------------|-----------------------------------------
Authorization   | FORBIDDEN                   | Caller is not buyer/seller of entity
----------------|-----------------------------|-----------------------------------------
State           | CONTRACT_NOT_OPEN           | Contract expired, cancelled or closed
                | ALREADY_FULFILLED           | Contract already has a winning offer
                | CONTRACT_NOT_FULFILLED      | Settlement requested before acceptance
                | ALREADY_PAID                | Transaction payout already completed
----------------|-----------------------------|-----------------------------------------
Not found       | CONTRACT_NOT_FOUND          | Contract ID doesn't exist
                | OFFER_NOT_FOUND             | Offer ID not on this contract
                | TRANSACTION_NOT_FOUND       | Sale transaction ID doesn't exist
                | UNKNOWN_ROLE                | Role tag is not buyer/farmer
----------------|-----------------------------|-----------------------------------------
Collaborator    | LOOKUP_FAILED               | Party directory lookup failed
                | COLLABORATOR_TIMEOUT        | External call exceeded its deadline
                | SETTLEMENT_FAILED           | Accept rolled back, settlement failed
                | PAYOUT_RETRYABLE            | Processor reported a transient error
                | PAYOUT_UNAVAILABLE          | No payout destination / fatal error

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Best-effort paths (matching, notification) catch CollaboratorUnavailableError,
   log it, and continue -- they never fail the triggering operation.

2. SettlementFailedError wraps the underlying settlement error as ``__cause__``
   and exposes its code as ``cause_code``:

    except SettlementFailedError as e:
        if e.cause_code == PayoutRetryableError.code:
            schedule_explicit_retry(e.contract_id)

===============================================================================
"""


class MarketKernelError(Exception):
    """
    Base exception for all market kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "MARKET_KERNEL_ERROR"


# Input validation


class InputValidationError(MarketKernelError):
    """Base exception for malformed or out-of-range request data."""

    code: str = "INPUT_VALIDATION_ERROR"


class InvalidInputError(InputValidationError):
    """A request field failed validation."""

    code: str = "INVALID_INPUT"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class PriceExceedsCeilingError(InputValidationError):
    """Offered unit price is above the contract's maximum price."""

    code: str = "PRICE_EXCEEDS_CEILING"

    def __init__(self, contract_id: str, price: str, max_price: str):
        self.contract_id = contract_id
        self.price = price
        self.max_price = max_price
        super().__init__(
            f"Offered price {price} exceeds the maximum price {max_price} "
            f"of contract {contract_id}"
        )


class QuantityExceedsRequestedError(InputValidationError):
    """Offered quantity is above the contract's requested quantity."""

    code: str = "QUANTITY_EXCEEDS_REQUESTED"

    def __init__(self, contract_id: str, quantity: int, requested: int):
        self.contract_id = contract_id
        self.quantity = quantity
        self.requested = requested
        super().__init__(
            f"Offered quantity {quantity} exceeds the requested quantity "
            f"{requested} of contract {contract_id}"
        )


# Authorization


class AuthorizationError(MarketKernelError):
    """Base exception for callers lacking rights over an entity."""

    code: str = "AUTHORIZATION_DENIED"


class ForbiddenError(AuthorizationError):
    """Actor is not allowed to perform the action on the entity."""

    code: str = "FORBIDDEN"

    def __init__(self, actor_id: str, entity_type: str, entity_id: str, action: str):
        self.actor_id = actor_id
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.action = action
        super().__init__(
            f"Actor {actor_id} is not authorized to {action} {entity_type} {entity_id}"
        )


# State conflicts


class StateConflictError(MarketKernelError):
    """Base exception for operations invalid in the entity's current state."""

    code: str = "STATE_CONFLICT"


class ContractNotOpenError(StateConflictError):
    """Contract no longer accepts offers (expired, cancelled or closed)."""

    code: str = "CONTRACT_NOT_OPEN"

    def __init__(self, contract_id: str, state: str):
        self.contract_id = contract_id
        self.state = state
        super().__init__(
            f"Contract {contract_id} is not open for fulfillment (state: {state})"
        )


class AlreadyFulfilledError(StateConflictError):
    """Contract already has an accepted offer."""

    code: str = "ALREADY_FULFILLED"

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        super().__init__(f"Contract {contract_id} is already fulfilled")


class ContractNotFulfilledError(StateConflictError):
    """Settlement requested for a contract without a winning offer."""

    code: str = "CONTRACT_NOT_FULFILLED"

    def __init__(self, contract_id: str, state: str):
        self.contract_id = contract_id
        self.state = state
        super().__init__(
            f"Contract {contract_id} has no accepted offer to settle (state: {state})"
        )


class AlreadyPaidError(StateConflictError):
    """Payout for the transaction was already completed."""

    code: str = "ALREADY_PAID"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(
            f"Payout has already been processed for transaction {transaction_id}"
        )


# Not found


class NotFoundError(MarketKernelError):
    """Base exception for referenced entities that do not exist."""

    code: str = "NOT_FOUND"


class ContractNotFoundError(NotFoundError):
    """Contract with given ID was not found."""

    code: str = "CONTRACT_NOT_FOUND"

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        super().__init__(f"Contract not found: {contract_id}")


class OfferNotFoundError(NotFoundError):
    """Offer with given ID is not part of the contract."""

    code: str = "OFFER_NOT_FOUND"

    def __init__(self, contract_id: str, offer_id: str):
        self.contract_id = contract_id
        self.offer_id = offer_id
        super().__init__(f"Offer {offer_id} not found on contract {contract_id}")


class TransactionNotFoundError(NotFoundError):
    """Sale transaction with given ID was not found."""

    code: str = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class UnknownRoleError(NotFoundError):
    """Role tag is not one of the known party roles."""

    code: str = "UNKNOWN_ROLE"

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"Unknown party role: {role!r}")


# Collaborator failures


class CollaboratorUnavailableError(MarketKernelError):
    """Base exception for external dependency failures."""

    code: str = "COLLABORATOR_UNAVAILABLE"


class LookupFailedError(CollaboratorUnavailableError):
    """Party directory lookup failed; matching treats it as no candidates."""

    code: str = "LOOKUP_FAILED"

    def __init__(self, product_type: str, reason: str):
        self.product_type = product_type
        self.reason = reason
        super().__init__(f"Eligibility lookup for {product_type!r} failed: {reason}")


class CollaboratorTimeoutError(CollaboratorUnavailableError):
    """External call did not complete within its deadline."""

    code: str = "COLLABORATOR_TIMEOUT"

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds}s")


class SettlementError(CollaboratorUnavailableError):
    """Base exception for the critical payout path."""

    code: str = "SETTLEMENT_ERROR"


class PayoutRetryableError(SettlementError):
    """Processor reported a transient failure; retry with the same key."""

    code: str = "PAYOUT_RETRYABLE"

    def __init__(self, source_id: str, idempotency_key: str, reason: str):
        self.source_id = source_id
        self.idempotency_key = idempotency_key
        self.reason = reason
        super().__init__(f"Payout for {source_id} failed and may be retried: {reason}")


class PayoutUnavailableError(SettlementError):
    """Payout cannot be issued (no linked destination or fatal processor error)."""

    code: str = "PAYOUT_UNAVAILABLE"

    def __init__(self, source_id: str, recipient_id: str, reason: str):
        self.source_id = source_id
        self.recipient_id = recipient_id
        self.reason = reason
        super().__init__(
            f"Payout for {source_id} to {recipient_id} is unavailable: {reason}"
        )


class SettlementFailedError(SettlementError):
    """Accept was rolled back because settlement failed."""

    code: str = "SETTLEMENT_FAILED"

    def __init__(self, contract_id: str, cause_code: str, reason: str):
        self.contract_id = contract_id
        self.cause_code = cause_code
        self.reason = reason
        super().__init__(
            f"Settlement of contract {contract_id} failed ({cause_code}): {reason}"
        )
