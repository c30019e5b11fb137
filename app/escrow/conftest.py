"""
Pytest fixtures shared by the escrow test packages.

Redis (distributed locks) is mocked for every test and the payment
processor is replaced with FakePaymentProcessor. State fixtures build
escrows through the services, so the ledger always matches the state.

Usage:
    def test_refund_captured_escrow(captured_escrow):
        refund = RefundService.initiate_refund(captured_escrow.id, 3000)
        assert refund.state == RefundState.PENDING
"""

from unittest.mock import MagicMock, patch

import pytest

from escrow.adapters import set_payment_processor
from escrow.models import Escrow
from escrow.services import EscrowService, PayoutService, RefundService
from escrow.tests.fakes import FakePaymentProcessor


# =============================================================================
# Infrastructure Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock Redis for distributed locking. Every lock is granted."""
    mock_redis = MagicMock()
    mock_redis.set.return_value = True
    mock_redis.get.return_value = None
    mock_redis.delete.return_value = 1
    mock_redis.eval.return_value = 1

    with patch("escrow.locks.get_redis_connection", return_value=mock_redis):
        yield mock_redis


@pytest.fixture(autouse=True)
def processor():
    """Fake payment processor injected into the services."""
    fake = FakePaymentProcessor()
    set_payment_processor(fake)
    yield fake
    set_payment_processor(None)


# =============================================================================
# Escrow State Fixtures
# =============================================================================


@pytest.fixture
def pending_escrow(db):
    """PENDING escrow for milestone 42, 100.00 USD, intent registered."""
    return EscrowService.create_escrow(milestone_id=42, amount_cents=10000, currency="usd")


@pytest.fixture
def funded_escrow(pending_escrow):
    """FUNDED escrow with its FUND entry."""
    return EscrowService.confirm_funded(
        pending_escrow.id, pending_escrow.processor_payment_intent_id
    )


@pytest.fixture
def captured_escrow(funded_escrow):
    """CAPTURED escrow with FUND and CAPTURE entries."""
    return EscrowService.capture(funded_escrow.id)


@pytest.fixture
def in_transit_payout(captured_escrow):
    """Payout to acct_1 accepted by the processor, not yet confirmed."""
    return PayoutService.initiate_payout(captured_escrow.id, "acct_1")


@pytest.fixture
def released_escrow(in_transit_payout):
    """RELEASED escrow: payout confirmed paid, PAYOUT and FEE entries written."""
    PayoutService.confirm_payout(
        in_transit_payout.id, in_transit_payout.processor_transfer_id, "paid"
    )
    return Escrow.objects.get(id=in_transit_payout.escrow_id)


@pytest.fixture
def pending_refund(captured_escrow):
    """Refund of 30.00 submitted against the captured escrow."""
    return RefundService.initiate_refund(captured_escrow.id, 3000, reason="Scope reduced")


@pytest.fixture
def get_fresh():
    """Re-read a row (refresh_from_db is unavailable on protected FSM fields)."""

    def _get(instance):
        return type(instance).objects.get(pk=instance.pk)

    return _get
