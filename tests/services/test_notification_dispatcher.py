"""
Tests for NotificationDispatcher and the notice builders.

Delivery is best-effort: nothing here may raise to the caller.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from market_kernel.domain.dtos import ContractInfo, OfferInfo
from market_kernel.domain.lifecycle import ContractState, OfferState
from market_kernel.services.notification_dispatcher import (
    CATEGORY_CONTRACT,
    CATEGORY_FULFILLMENT,
    Notice,
    NotificationDispatcher,
    contract_cancelled,
    new_contract_available,
    offer_accepted,
    offer_received,
)
from tests.conftest import START, usd


@pytest.fixture
def contract(buyer_id) -> ContractInfo:
    return ContractInfo(
        id=uuid4(),
        buyer_id=buyer_id,
        product_type="tomatoes",
        product_category="vegetables",
        quantity=100,
        max_price=usd("10.00"),
        end_time=START + timedelta(days=7),
        state=ContractState.OPEN,
        stored_state=ContractState.OPEN,
        offers=(),
        winning_offer_id=None,
        notified_parties=frozenset(),
    )


@pytest.fixture
def offer(contract, farmer_id) -> OfferInfo:
    return OfferInfo(
        id=uuid4(),
        contract_id=contract.id,
        farmer_id=farmer_id,
        sequence=1,
        quantity=80,
        price=usd("9.50"),
        state=OfferState.PENDING,
        submitted_at=START,
    )


@pytest.fixture
def dispatcher(notifier, gateway, directory, sms):
    d = NotificationDispatcher(notifier, gateway, directory=directory, sms_gateway=sms)
    yield d
    d.shutdown()


class TestNoticeBuilders:

    def test_new_contract_available(self, contract, farmer_id):
        notice = new_contract_available(contract, farmer_id)

        assert notice.recipient_id == farmer_id
        assert notice.category == CATEGORY_CONTRACT
        assert notice.message == (
            "New contract available for tomatoes. Quantity: 100, Max Price: 10.00 USD"
        )
        assert "100 units of tomatoes" in notice.sms_body

    def test_offer_received_goes_to_buyer(self, contract, offer, buyer_id):
        notice = offer_received(contract, offer)

        assert notice.recipient_id == buyer_id
        assert notice.category == CATEGORY_FULFILLMENT
        assert "80 units at 9.50 USD" in notice.message

    def test_offer_accepted_goes_to_farmer(self, contract, offer, farmer_id):
        notice = offer_accepted(contract, offer)

        assert notice.recipient_id == farmer_id
        assert notice.message == "Your fulfillment offer for tomatoes has been accepted!"

    def test_cancellation_has_no_sms(self, contract, farmer_id):
        assert contract_cancelled(contract, farmer_id).sms_body is None


class TestDispatch:

    def test_delivers_in_app_and_sms(self, dispatcher, notifier, sms, farmer_id):
        dispatcher.dispatch(farmer_id, "hello", CATEGORY_CONTRACT, sms_body="hi")

        assert notifier.to(farmer_id) == [("hello", CATEGORY_CONTRACT)]
        assert sms.sent == [("+15550000002", "hi")]

    def test_no_sms_without_body(self, dispatcher, sms, farmer_id):
        dispatcher.send(Notice(farmer_id, CATEGORY_CONTRACT, "hello"))
        assert sms.sent == []

    def test_no_sms_without_phone(self, dispatcher, notifier, sms, directory):
        farmer = directory.add_farmer(phone=None)

        dispatcher.dispatch(farmer, "hello", CATEGORY_CONTRACT, sms_body="hi")

        assert notifier.to(farmer) == [("hello", CATEGORY_CONTRACT)]
        assert sms.sent == []

    def test_sms_disabled(self, notifier, gateway, directory, sms, farmer_id):
        d = NotificationDispatcher(
            notifier, gateway, directory=directory, sms_gateway=sms, sms_enabled=False
        )
        d.dispatch(farmer_id, "hello", CATEGORY_CONTRACT, sms_body="hi")
        assert sms.sent == []

    def test_notifier_failure_is_swallowed_and_sms_still_sent(
        self, dispatcher, notifier, sms, farmer_id, captured_logs
    ):
        notifier.fail_all = True

        dispatcher.dispatch(farmer_id, "hello", CATEGORY_CONTRACT, sms_body="hi")

        assert sms.sent == [("+15550000002", "hi")]
        failures = [r for r in captured_logs() if r["message"] == "notification_failed"]
        assert failures[0]["recipient_id"] == str(farmer_id)

    def test_sms_failure_is_swallowed(self, dispatcher, notifier, sms, farmer_id, captured_logs):
        sms.fail_all = True

        dispatcher.dispatch(farmer_id, "hello", CATEGORY_CONTRACT, sms_body="hi")

        assert notifier.to(farmer_id) == [("hello", CATEGORY_CONTRACT)]
        assert any(r["message"] == "sms_failed" for r in captured_logs())

    def test_one_failing_recipient_does_not_block_others(self, dispatcher, notifier):
        bad, good = uuid4(), uuid4()
        notifier.failing_recipients.add(bad)

        dispatcher.send_all(
            [Notice(bad, CATEGORY_CONTRACT, "x"), Notice(good, CATEGORY_CONTRACT, "y")]
        )

        assert notifier.recipients == {good}

    def test_worker_pool_delivers_after_shutdown(self, notifier, gateway):
        d = NotificationDispatcher(notifier, gateway, max_workers=2)
        recipients = [uuid4() for _ in range(5)]

        futures = [d.dispatch(r, "hello", CATEGORY_CONTRACT) for r in recipients]
        d.shutdown(wait=True)

        assert all(f is not None for f in futures)
        assert notifier.recipients == set(recipients)

    def test_send_after_shutdown_does_not_raise(self, notifier, gateway):
        d = NotificationDispatcher(notifier, gateway, max_workers=1)
        d.shutdown()

        assert d.dispatch(uuid4(), "late", CATEGORY_CONTRACT) is None
        assert notifier.sent == []
