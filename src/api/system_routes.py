"""
System health and monitoring API routes
"""

from fastapi import APIRouter
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


def create_system_routes(registry, session_manager, config):
    """Create system monitoring routes"""
    router = APIRouter(prefix="/api", tags=["system"])

    @router.get("/system/health")
    async def system_health():
        """System health check"""
        try:
            controllers = await registry.list_records()
            return {
                "status": "healthy" if registry.pool is not None else "degraded",
                "registry": "connected" if registry.pool is not None else "disconnected",
                "controllers": {"count": len(controllers)},
                "sessions": {
                    "active_count": session_manager.active_count(),
                    "known_count": len(session_manager.list_sessions()),
                },
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat()
            }

    return router
