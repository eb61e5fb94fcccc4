"""
Health and monitoring endpoints.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from threadrelay.api.dependencies import DB, AppSettings, Batcher, Registry
from threadrelay.utils.db_utils import check_pool_health
from threadrelay.utils.metrics import db_pool_connections

router = APIRouter()


@router.get("/ping", response_class=PlainTextResponse, summary="Liveness ping")
async def ping() -> str:
    return "pong"


@router.get(
    "/health",
    summary="Health check",
    description="Database pool, batcher and stream session status.",
    responses={
        200: {
            "content": {
                "application/json": {
                    "example": {
                        "status": "healthy",
                        "version": "1.0.0",
                        "database": {"healthy": True, "pool_size": 10, "free_connections": 8},
                        "batcher": {"keys": 2, "buffered_items": 3, "dropped_batches": 0},
                        "streams": {"active_sessions": 2, "shutting_down": False},
                    }
                }
            }
        }
    },
)
async def health_check(db: DB, batcher: Batcher, registry: Registry, settings: AppSettings) -> dict[str, Any]:
    database = await check_pool_health(db)
    db_pool_connections.labels(state="free").set(database["free_connections"])
    db_pool_connections.labels(state="used").set(database["used_connections"])

    batch_stats = batcher.stats()
    stream_stats = registry.get_stats()

    if not database["healthy"]:
        status = "unhealthy"
    elif batch_stats["dropped_batches"] or stream_stats["shutting_down"] or not batch_stats["running"]:
        status = "degraded"
    else:
        status = "healthy"

    return {
        "status": status,
        "version": settings.app_version,
        "database": database,
        "batcher": batch_stats,
        "streams": stream_stats,
    }


@router.get("/metrics", summary="Prometheus metrics", include_in_schema=False)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
