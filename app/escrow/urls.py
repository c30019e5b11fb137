"""
URL configuration for the escrow app.

Routes:
    - POST /webhooks/stripe/ - Stripe webhook endpoint
    - GET /webhooks/stripe/health/ - Webhook receiver health check

Usage:
    # In config/urls.py
    path("", include("escrow.urls")),
"""

from django.urls import path

from escrow.webhooks.views import stripe_webhook, webhook_health

app_name = "escrow"

urlpatterns = [
    path("webhooks/stripe/", stripe_webhook, name="stripe_webhook"),
    path("webhooks/stripe/health/", webhook_health, name="webhook_health"),
]
