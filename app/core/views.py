"""
Infrastructure endpoints for the settlement service.

Only the database is required to answer requests: every escrow, payout
and ledger write goes through it. Redis backs the distributed locks and
the cache, so losing it degrades mutations but not reads.
"""

import logging

from django.core.cache import cache
from django.db import connection
from django.http import JsonResponse
from django_redis import get_redis_connection

logger = logging.getLogger(__name__)


def _database_ok() -> bool:
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception:
        logger.exception("Health check: database unreachable")
        return False
    return True


def _cache_ok() -> bool:
    try:
        cache.set("health_check", "ok", timeout=1)
        return cache.get("health_check") == "ok"
    except Exception:
        logger.warning("Health check: cache unreachable", exc_info=True)
        return False


def _lock_backend_ok() -> bool:
    # Non-Redis cache backends raise NotImplementedError here
    try:
        return bool(get_redis_connection("default").ping())
    except Exception:
        logger.warning("Health check: lock backend unreachable", exc_info=True)
        return False


def health_check(request):
    """
    Health check for load balancers and container orchestration.

    Returns:
        JsonResponse with overall status and component health:
        - status: "healthy", "degraded" (Redis down) or "unhealthy"
        - database / cache / locks: "connected" or "disconnected"

    HTTP Status Codes:
        200: Database reachable (healthy or degraded)
        503: Database unreachable
    """
    components = {
        "database": _database_ok(),
        "cache": _cache_ok(),
        "locks": _lock_backend_ok(),
    }

    if not components["database"]:
        status = "unhealthy"
    elif all(components.values()):
        status = "healthy"
    else:
        status = "degraded"

    body = {"status": status}
    body.update(
        {name: "connected" if ok else "disconnected" for name, ok in components.items()}
    )
    return JsonResponse(body, status=503 if status == "unhealthy" else 200)
