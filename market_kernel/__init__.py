"""
Market Kernel - open-contract negotiation and settlement.

A buyer-driven procurement marketplace core with:
- Explicit contract state machine with lazy expiry
- Per-contract serialized offer intake
- Single-winner acceptance via check-and-set
- Exactly-once payout issuance keyed by idempotency key
- Failure-isolated notification side channel
"""

__version__ = "0.1.0"
