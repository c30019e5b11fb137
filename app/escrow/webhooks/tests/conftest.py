"""
Pytest fixtures for webhook tests.

Provides Stripe-shaped payloads and stored WebhookEvent rows. Escrow
state fixtures (captured_escrow, in_transit_payout, ...) and the fake
processor come from escrow/conftest.py.
"""

import json

import pytest
from django.test import RequestFactory

from escrow.models import WebhookEvent
from escrow.state_machines import WebhookEventStatus
from escrow.tests.fakes import VALID_SIGNATURE


@pytest.fixture
def rf():
    """Request factory for creating test requests."""
    return RequestFactory()


@pytest.fixture
def stripe_event():
    """Build a Stripe event envelope around a data object."""

    def _build(event_type: str, data_object: dict, event_id: str = "evt_test_1") -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }

    return _build


@pytest.fixture
def make_webhook_event(db, stripe_event):
    """Store a PENDING WebhookEvent for a Stripe event."""

    def _make(event_type: str, data_object: dict, event_id: str = "evt_test_1", **kwargs):
        return WebhookEvent.objects.create(
            stripe_event_id=event_id,
            event_type=event_type,
            payload=stripe_event(event_type, data_object, event_id),
            status=kwargs.pop("status", WebhookEventStatus.PENDING),
            **kwargs,
        )

    return _make


@pytest.fixture
def post_webhook(rf):
    """POST a payload to the webhook endpoint with a signature header."""

    def _post(payload: dict, signature: str | None = VALID_SIGNATURE):
        headers = {"HTTP_STRIPE_SIGNATURE": signature} if signature else {}
        return rf.post(
            "/webhooks/stripe/",
            data=json.dumps(payload),
            content_type="application/json",
            **headers,
        )

    return _post
