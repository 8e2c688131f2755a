# =============================================================================
# Freight Payments Project Configuration
# =============================================================================
# Settings, URLs, ASGI/WSGI entry points and the Celery application.
#
# The Celery app is imported here so that shared_task decorators in
# payments.workers bind to it as soon as Django starts.
# =============================================================================

from config.celery import app as celery_app

__all__ = ("celery_app",)
