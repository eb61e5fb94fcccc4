"""
API Router - Aggregates all endpoints.

Usage in main.py:
    from threadrelay.api.routes import router as api_router
    app.include_router(api_router, prefix="/api")
"""

from fastapi import APIRouter

from threadrelay.api.routes import health, images, messages, threads

router = APIRouter()

router.include_router(health.router, tags=["Health"])
router.include_router(threads.router, tags=["Conversations"])
router.include_router(messages.router, tags=["Messages"])
router.include_router(images.router, tags=["Images"])

__all__ = ["router"]
