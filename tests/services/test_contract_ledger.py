"""
Tests for ContractLedger: the contract negotiation state machine.

All calls share one session; nothing is committed.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from market_kernel.domain.collaborators import RetryablePaymentError
from market_kernel.domain.lifecycle import ContractState, OfferState, PayoutStatus
from market_kernel.domain.values import Money
from market_kernel.exceptions import (
    AlreadyFulfilledError,
    ContractNotFoundError,
    ContractNotOpenError,
    ForbiddenError,
    InvalidInputError,
    OfferNotFoundError,
    PayoutRetryableError,
    PayoutUnavailableError,
    PriceExceedsCeilingError,
    QuantityExceedsRequestedError,
    SettlementFailedError,
)
from tests.conftest import usd


@pytest.fixture
def contract(ledger, buyer_id, end_time):
    return ledger.create_contract(buyer_id, "tomatoes", "vegetables", 100, usd("10.00"), end_time)


class TestCreateContract:

    def test_valid_contract_is_open_and_empty(self, contract, buyer_id):
        assert contract.state == ContractState.OPEN
        assert contract.stored_state == ContractState.OPEN
        assert contract.buyer_id == buyer_id
        assert contract.offers == ()
        assert contract.notified_parties == frozenset()
        assert contract.winning_offer_id is None
        assert contract.max_price == usd("10.00")

    def test_product_type_is_stripped(self, ledger, buyer_id, end_time):
        c = ledger.create_contract(buyer_id, "  okra ", None, 1, usd("1.00"), end_time)
        assert c.product_type == "okra"
        assert c.product_category is None

    @pytest.mark.parametrize("quantity", [0, -5, True, "10", Decimal("3")])
    def test_invalid_quantity(self, ledger, buyer_id, end_time, quantity):
        with pytest.raises(InvalidInputError) as exc_info:
            ledger.create_contract(buyer_id, "tomatoes", None, quantity, usd("10.00"), end_time)
        assert exc_info.value.field == "quantity"

    @pytest.mark.parametrize(
        "max_price",
        [usd("0"), usd("-1.00"), Money.of("10.00", "EUR"), Decimal("10.00")],
    )
    def test_invalid_max_price(self, ledger, buyer_id, end_time, max_price):
        with pytest.raises(InvalidInputError) as exc_info:
            ledger.create_contract(buyer_id, "tomatoes", None, 10, max_price, end_time)
        assert exc_info.value.field == "max_price"

    def test_end_time_must_be_in_future(self, ledger, buyer_id, clock):
        with pytest.raises(InvalidInputError):
            ledger.create_contract(buyer_id, "tomatoes", None, 10, usd("1.00"), clock.now())

    def test_naive_end_time_rejected(self, ledger, buyer_id):
        with pytest.raises(InvalidInputError, match="timezone"):
            ledger.create_contract(
                buyer_id, "tomatoes", None, 10, usd("1.00"), datetime(2030, 1, 1)
            )

    def test_empty_product_type_rejected(self, ledger, buyer_id, end_time):
        with pytest.raises(InvalidInputError):
            ledger.create_contract(buyer_id, "   ", None, 10, usd("1.00"), end_time)


class TestSubmitOffer:

    def test_first_offer_moves_to_pending_fulfillment(self, ledger, contract, farmer_id):
        offer = ledger.submit_offer(contract.id, farmer_id, 80, usd("9.50"))

        assert offer.state == OfferState.PENDING
        assert offer.sequence == 1
        assert offer.contract_id == contract.id
        after = ledger.get_contract(contract.id)
        assert after.state == ContractState.PENDING_FULFILLMENT
        assert [o.id for o in after.offers] == [offer.id]

    def test_sequences_follow_submission_order(self, ledger, contract, directory):
        farmers = [directory.add_farmer() for _ in range(3)]
        offers = [ledger.submit_offer(contract.id, f, 10, usd("5.00")) for f in farmers]

        assert [o.sequence for o in offers] == [1, 2, 3]
        assert [o.farmer_id for o in ledger.get_contract(contract.id).offers] == farmers

    def test_same_farmer_may_offer_twice(self, ledger, contract, farmer_id):
        ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        ledger.submit_offer(contract.id, farmer_id, 20, usd("8.00"))
        assert len(ledger.get_contract(contract.id).offers_by(farmer_id)) == 2

    def test_price_above_ceiling_rejected_and_offers_unchanged(self, ledger, contract, farmer_id):
        with pytest.raises(PriceExceedsCeilingError) as exc_info:
            ledger.submit_offer(contract.id, farmer_id, 10, usd("10.01"))

        assert Decimal(exc_info.value.max_price) == Decimal("10.00")
        after = ledger.get_contract(contract.id)
        assert after.offers == ()
        assert after.state == ContractState.OPEN

    def test_price_at_ceiling_accepted(self, ledger, contract, farmer_id):
        assert ledger.submit_offer(contract.id, farmer_id, 100, usd("10.00")).price == usd("10.00")

    def test_quantity_above_requested_rejected(self, ledger, contract, farmer_id):
        with pytest.raises(QuantityExceedsRequestedError) as exc_info:
            ledger.submit_offer(contract.id, farmer_id, 101, usd("9.00"))
        assert exc_info.value.requested == 100

    def test_unknown_contract(self, ledger, farmer_id):
        with pytest.raises(ContractNotFoundError):
            ledger.submit_offer(uuid4(), farmer_id, 1, usd("1.00"))

    def test_expired_contract_rejects_offers(self, ledger, contract, farmer_id, clock):
        clock.advance(int(timedelta(days=8).total_seconds()))

        with pytest.raises(ContractNotOpenError) as exc_info:
            ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        assert exc_info.value.state == ContractState.EXPIRED.value
        assert ledger.get_contract(contract.id).state == ContractState.EXPIRED

    def test_buyer_cannot_offer_on_own_contract(self, ledger, contract, buyer_id):
        with pytest.raises(ForbiddenError):
            ledger.submit_offer(contract.id, buyer_id, 10, usd("9.00"))

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_non_positive_quantity(self, ledger, contract, farmer_id, quantity):
        with pytest.raises(InvalidInputError):
            ledger.submit_offer(contract.id, farmer_id, quantity, usd("9.00"))

    def test_non_positive_price(self, ledger, contract, farmer_id):
        with pytest.raises(InvalidInputError):
            ledger.submit_offer(contract.id, farmer_id, 10, usd("0.00"))

    def test_offer_in_other_currency_rejected(self, ledger, contract, farmer_id):
        with pytest.raises(InvalidInputError):
            ledger.submit_offer(contract.id, farmer_id, 10, Money.of("9.00", "EUR"))


class TestAcceptOffer:

    def test_tomato_scenario(self, ledger, contract, buyer_id, farmer_id, directory, issuer):
        other = directory.add_farmer()
        winner = ledger.submit_offer(contract.id, farmer_id, 80, usd("9.50"))
        loser = ledger.submit_offer(contract.id, other, 100, usd("9.90"))

        result = ledger.accept_offer(contract.id, buyer_id, winner.id)

        fulfilled = result.contract
        assert fulfilled.state == ContractState.FULFILLED
        assert fulfilled.winning_offer_id == winner.id
        states = {o.id: o.state for o in fulfilled.offers}
        assert states == {winner.id: OfferState.ACCEPTED, loser.id: OfferState.REJECTED}

        payout = result.payout
        assert payout.recipient_id == farmer_id
        assert payout.gross_amount == usd("760.00")
        assert payout.platform_fee == usd("38.00")
        assert payout.net_amount == usd("722.00")
        assert payout.status == PayoutStatus.COMPLETED
        assert payout.external_payout_id == "po_1"
        assert issuer.calls[0]["destination"] == "acct_green_acres"
        assert issuer.calls[0]["amount"] == Decimal("722.00")

    def test_only_buyer_may_accept(self, ledger, contract, farmer_id):
        offer = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        with pytest.raises(ForbiddenError):
            ledger.accept_offer(contract.id, farmer_id, offer.id)

    def test_unknown_offer(self, ledger, contract, buyer_id, farmer_id):
        ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        with pytest.raises(OfferNotFoundError):
            ledger.accept_offer(contract.id, buyer_id, uuid4())

    def test_second_accept_is_already_fulfilled(self, ledger, contract, buyer_id, farmer_id, directory):
        first = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        second = ledger.submit_offer(contract.id, directory.add_farmer(), 10, usd("8.00"))
        ledger.accept_offer(contract.id, buyer_id, first.id)

        with pytest.raises(AlreadyFulfilledError):
            ledger.accept_offer(contract.id, buyer_id, second.id)

    def test_offers_after_fulfillment_are_not_open(self, ledger, contract, buyer_id, farmer_id):
        offer = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        ledger.accept_offer(contract.id, buyer_id, offer.id)

        with pytest.raises(ContractNotOpenError):
            ledger.submit_offer(contract.id, farmer_id, 5, usd("9.00"))

    def test_expired_contract_cannot_be_accepted(self, ledger, contract, buyer_id, farmer_id, clock):
        offer = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        clock.advance(int(timedelta(days=7).total_seconds()))

        with pytest.raises(ContractNotOpenError):
            ledger.accept_offer(contract.id, buyer_id, offer.id)

    def test_retryable_settlement_failure_rolls_back(
        self, ledger, settlement, contract, buyer_id, farmer_id, issuer
    ):
        offer = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        issuer.fail_next(RetryablePaymentError("processor busy"))

        with pytest.raises(SettlementFailedError) as exc_info:
            ledger.accept_offer(contract.id, buyer_id, offer.id)

        assert exc_info.value.cause_code == PayoutRetryableError.code
        assert isinstance(exc_info.value.__cause__, PayoutRetryableError)
        after = ledger.get_contract(contract.id)
        assert after.state == ContractState.PENDING_FULFILLMENT
        assert after.winning_offer_id is None
        assert [o.state for o in after.offers] == [OfferState.PENDING]
        assert settlement.get_payout_for_contract(contract.id) is None

    def test_accept_succeeds_after_rolled_back_attempt(
        self, ledger, contract, buyer_id, farmer_id, issuer
    ):
        offer = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        issuer.fail_next(RetryablePaymentError("processor busy"))
        with pytest.raises(SettlementFailedError):
            ledger.accept_offer(contract.id, buyer_id, offer.id)

        result = ledger.accept_offer(contract.id, buyer_id, offer.id)

        assert result.contract.state == ContractState.FULFILLED
        keys = {call["idempotency_key"] for call in issuer.calls}
        assert len(keys) == 1

    def test_missing_payout_destination_is_unavailable(
        self, ledger, contract, buyer_id, directory, issuer
    ):
        farmer = directory.add_farmer(payout_destination=None)
        offer = ledger.submit_offer(contract.id, farmer, 10, usd("9.00"))

        with pytest.raises(SettlementFailedError) as exc_info:
            ledger.accept_offer(contract.id, buyer_id, offer.id)

        assert exc_info.value.cause_code == PayoutUnavailableError.code
        assert issuer.calls == []
        after = ledger.get_contract(contract.id)
        assert after.state == ContractState.PENDING_FULFILLMENT
        assert after.winning_offer_id is None
        assert after.fulfilled_at is None
        assert [o.state for o in after.offers] == [OfferState.PENDING]


class TestCancelContract:

    def test_cancel_rejects_pending_offers(self, ledger, contract, buyer_id, farmer_id):
        ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))

        cancelled = ledger.cancel_contract(contract.id, buyer_id)

        assert cancelled.state == ContractState.CANCELLED
        assert cancelled.cancelled_at is not None
        assert [o.state for o in cancelled.offers] == [OfferState.REJECTED]

    def test_only_buyer_may_cancel(self, ledger, contract, farmer_id):
        with pytest.raises(ForbiddenError):
            ledger.cancel_contract(contract.id, farmer_id)

    def test_cannot_cancel_fulfilled(self, ledger, contract, buyer_id, farmer_id):
        offer = ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        ledger.accept_offer(contract.id, buyer_id, offer.id)

        with pytest.raises(AlreadyFulfilledError):
            ledger.cancel_contract(contract.id, buyer_id)

    def test_cancelled_contract_rejects_offers(self, ledger, contract, buyer_id, farmer_id):
        ledger.cancel_contract(contract.id, buyer_id)
        with pytest.raises(ContractNotOpenError) as exc_info:
            ledger.submit_offer(contract.id, farmer_id, 10, usd("9.00"))
        assert exc_info.value.state == ContractState.CANCELLED.value

    def test_cancel_twice_is_not_open(self, ledger, contract, buyer_id):
        ledger.cancel_contract(contract.id, buyer_id)
        with pytest.raises(ContractNotOpenError):
            ledger.cancel_contract(contract.id, buyer_id)


class TestRecordNotified:

    def test_skips_buyer_and_already_notified(self, ledger, contract, buyer_id):
        a, b = uuid4(), uuid4()

        first = ledger.record_notified(contract.id, [a, buyer_id])
        second = ledger.record_notified(contract.id, [a, b])

        assert first == frozenset({a})
        assert second == frozenset({b})
        assert ledger.get_contract(contract.id).notified_parties == frozenset({a, b})

    def test_closed_contract_records_nobody(self, ledger, contract, buyer_id):
        ledger.cancel_contract(contract.id, buyer_id)
        assert ledger.record_notified(contract.id, [uuid4()]) == frozenset()
