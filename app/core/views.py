"""
Core views providing infrastructure endpoints.
"""

from django.db import connection
from django.http import JsonResponse
from django_redis import get_redis_connection


def health_check(request):
    """
    Health check endpoint for load balancers and container probes.

    The database is required. Redis backs the per-shipment locks, so an
    unreachable Redis also marks the service unhealthy: every escrow
    operation would fail with LOCK_CONTENTION until it recovers.

    Returns:
        JsonResponse with status and component health, HTTP 200 or 503

    Example Response:
        {
            "status": "healthy",
            "database": "connected",
            "redis": "connected"
        }
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
    }
    is_healthy = True

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
        health_status["database"] = "connected"
    except Exception:
        health_status["database"] = "disconnected"
        is_healthy = False

    try:
        get_redis_connection("default").ping()
        health_status["redis"] = "connected"
    except Exception:
        health_status["redis"] = "disconnected"
        is_healthy = False

    if not is_healthy:
        health_status["status"] = "unhealthy"

    return JsonResponse(health_status, status=200 if is_healthy else 503)
