"""
URL configuration for the escrow settlement service.

The settlement core is driven by internal service calls and processor
webhooks, so the HTTP surface is small.

URL Structure:
    /admin/                        - Django admin (ledger and review queue)
    /health/                       - Health check endpoint (load balancers, Docker)
    /webhooks/stripe/              - Stripe webhook endpoint (POST)
    /webhooks/stripe/health/       - Webhook receiver liveness probe (GET)
"""

from django.contrib import admin
from django.urls import include, path

from core.views import health_check

urlpatterns = [
    # Admin
    path("admin/", admin.site.urls),
    # Health check (Docker, Kubernetes, load balancers)
    path("health/", health_check, name="health_check"),
    # Processor webhooks
    path("", include("escrow.urls")),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Escrow Settlement Admin"
admin.site.site_title = "Escrow Admin"
admin.site.index_title = "Escrows, ledger and reconciliation"
