"""
URL configuration for the payments engine.

The engine has no public HTTP API; callers use PaymentOrchestrator directly.
Only operator and infrastructure routes are exposed.

URL Structure:
    /admin/                        - Django admin (read-only ledger and audit views)
    /health/                       - Health check endpoint (load balancers, Docker)
"""

from django.contrib import admin
from django.urls import path

from core.views import health_check

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health/", health_check, name="health_check"),
]

# =============================================================================
# Admin Site Customization
# =============================================================================
admin.site.site_header = "Freight Payments Admin"
admin.site.site_title = "Freight Payments"
admin.site.index_title = "Escrow, settlements and subscriptions"
