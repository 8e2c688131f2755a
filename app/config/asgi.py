"""
ASGI config for the payments engine.

Exposes the ASGI callable as a module-level variable named `application`
for deployments that serve the admin through Uvicorn.
"""

import os

from django.core.asgi import get_asgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_asgi_application()
