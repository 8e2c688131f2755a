"""
Payments app configuration.
"""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Escrow, subscription billing, refunds and the wallet ledger."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
    verbose_name = "Payments & Escrow"
