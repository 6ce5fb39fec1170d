"""
Health endpoints for deployment probes.

- /health: liveness, always 200 while the process runs
- /ready: 503 until the entity store is wired and every configured
  backend (PostgreSQL, Redis) answers
- /metrics: room counts by status
"""

import logging
from collections import Counter
from datetime import datetime, timezone

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from errors import StoreError
from models.entities import RoomStatus

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

# Statuses that are not a game being played
IDLE_STATUSES = {RoomStatus.WAITING.value, RoomStatus.COMPLETED.value}

# Service references (set during app startup)
_db_pool = None
_redis_client = None
_entity_store = None


def set_health_dependencies(db_pool=None, redis_client=None, entity_store=None):
    global _db_pool, _redis_client, _entity_store
    _db_pool = db_pool
    _redis_client = redis_client
    _entity_store = entity_store


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _check_database() -> dict:
    if _db_pool is None:
        return {"status": "not_configured"}
    try:
        async with _db_pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
    except Exception as e:
        logger.warning(f"Database readiness check failed: {e}")
        return {"status": "error", "message": str(e)}
    return {"status": "ok"}


async def _check_redis() -> dict:
    if _redis_client is None:
        return {"status": "not_configured"}
    try:
        await _redis_client.ping()
    except Exception as e:
        logger.warning(f"Redis readiness check failed: {e}")
        return {"status": "error", "message": str(e)}
    return {"status": "ok"}


@router.get("/health")
async def health_check():
    return {"status": "ok", "timestamp": _now()}


@router.get("/ready")
async def readiness_check():
    """Report each backend; any error makes the whole server not ready."""
    if _entity_store is None:
        store_check = {"status": "error", "message": "not initialized"}
    else:
        store_check = {"status": "ok", "backend": type(_entity_store).__name__}

    checks = {
        "store": store_check,
        "database": await _check_database(),
        "redis": await _check_redis(),
    }
    healthy = all(c["status"] != "error" for c in checks.values())

    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "checks": checks,
            "timestamp": _now(),
        },
    )


@router.get("/metrics")
async def metrics():
    """Rooms overall, per status, and currently in play."""
    data = {"timestamp": _now()}
    if _entity_store is None:
        return data

    try:
        rooms = await _entity_store.list_rooms()
    except StoreError as e:
        logger.warning(f"Room metrics unavailable: {e}")
        return data

    by_status = Counter(r.status.value for r in rooms)
    data.update(
        total_rooms=len(rooms),
        rooms_by_status=dict(by_status),
        games_in_progress=sum(n for s, n in by_status.items() if s not in IDLE_STATUSES),
    )
    return data
