"""
Pytest fixtures for ledger tests.

Sections:
    - Escrow Fixtures: escrow rows the entries belong to
    - Account Fixtures: pre-configured ledger accounts
"""

import pytest

from escrow.ledger.models import AccountType
from escrow.ledger.tests.factories import LedgerAccountFactory
from escrow.tests.factories import EscrowFactory


# ==========================================================================
# Escrow Fixtures
# ==========================================================================


@pytest.fixture
def escrow(db):
    """A PENDING escrow of 100.00 USD (rows only, no ledger entries)."""
    return EscrowFactory(amount_cents=10000)


# ==========================================================================
# Account Fixtures
# ==========================================================================


@pytest.fixture
def payer_account(escrow):
    """
    Payer account of the escrow.

    Stands for the outside world, so it may go negative.
    """
    return LedgerAccountFactory(
        type=AccountType.PAYER,
        owner_ref=str(escrow.id),
        allow_negative=True,
    )


@pytest.fixture
def held_account(escrow):
    """Escrow held account. Cannot go negative."""
    return LedgerAccountFactory(type=AccountType.ESCROW_HELD, owner_ref=str(escrow.id))


@pytest.fixture
def payee_account(db):
    return LedgerAccountFactory(type=AccountType.PAYEE, owner_ref="acct_1")
