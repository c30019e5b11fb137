"""
Pytest fixtures for Stripe adapter tests.

Stripe SDK resources are patched at the module attribute, so the adapter
never reaches the network. Each patched resource answers with the objects
an escrow of 100.00 USD would produce.
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import patch

import pytest
import stripe


@dataclass
class MockStripeObject:
    """Attribute access over a dict, plus to_dict(), like a StripeObject."""

    data: dict[str, Any]

    def __getattr__(self, name: str) -> Any:
        if name == "data":
            return self.__dict__["data"]
        return self.data.get(name)

    def to_dict(self) -> dict[str, Any]:
        return self.data


def stripe_object(object_type: str, object_id: str, **fields) -> MockStripeObject:
    return MockStripeObject({"id": object_id, "object": object_type, "metadata": {}, **fields})


def intent(status: str = "requires_capture", amount_received: int = 0) -> MockStripeObject:
    return stripe_object(
        "payment_intent",
        "pi_test123",
        status=status,
        amount=10000,
        currency="usd",
        client_secret="pi_test123_secret_abc",
        amount_received=amount_received,
    )


# =============================================================================
# Stripe Errors
# =============================================================================


@pytest.fixture
def card_error():
    def _create(code: str = "card_declined", decline_code: str | None = "generic_decline"):
        error = stripe.CardError(message="Your card was declined.", param=None, code=code)
        error.decline_code = decline_code
        return error

    return _create


@pytest.fixture
def invalid_request_error():
    def _create(
        message: str = "No such payment_intent: 'pi_missing'",
        param: str | None = "payment_intent",
        code: str = "resource_missing",
    ):
        return stripe.InvalidRequestError(message=message, param=param, code=code)

    return _create


@pytest.fixture
def api_connection_error():
    def _create(message: str = "Could not connect to Stripe."):
        return stripe.APIConnectionError(message=message)

    return _create


# =============================================================================
# Patched SDK Resources
# =============================================================================


@pytest.fixture
def mock_stripe_http_client():
    """Keep _configure_stripe from building a real requests session."""
    with patch("stripe.RequestsClient") as mock:
        yield mock


@pytest.fixture
def mock_stripe_payment_intent(mock_stripe_http_client):
    with patch("stripe.PaymentIntent") as mock:
        mock.create.return_value = intent()
        mock.capture.return_value = intent(status="succeeded", amount_received=10000)
        yield mock


@pytest.fixture
def mock_stripe_transfer(mock_stripe_http_client):
    with patch("stripe.Transfer") as mock:
        mock.create.return_value = stripe_object(
            "transfer", "tr_test123", amount=9500, currency="usd", destination="acct_1"
        )
        yield mock


@pytest.fixture
def mock_stripe_refund(mock_stripe_http_client):
    with patch("stripe.Refund") as mock:
        mock.create.return_value = stripe_object(
            "refund",
            "re_test123",
            amount=3000,
            currency="usd",
            status="pending",
            payment_intent="pi_test123",
        )
        yield mock


@pytest.fixture
def mock_stripe_webhook():
    with patch("stripe.Webhook") as mock:
        mock.construct_event.return_value = MockStripeObject(
            {
                "id": "evt_test123",
                "type": "transfer.paid",
                "data": {"object": {"id": "tr_test123", "object": "transfer"}},
            }
        )
        yield mock
