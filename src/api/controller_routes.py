"""
Provisioned controller API routes
"""

from fastapi import APIRouter, HTTPException
import logging

logger = logging.getLogger(__name__)


def create_controller_routes(registry):
    """Create registry routes"""
    router = APIRouter(prefix="/api/controllers", tags=["controllers"])

    @router.get("")
    async def list_controllers():
        """List provisioned controllers for this owner"""
        records = await registry.list_records()
        return {
            "controllers": [r.to_dict() for r in records],
            "count": len(records),
        }

    @router.get("/{controller_id}")
    async def get_controller(controller_id: str):
        """Get one provisioned controller"""
        record = await registry.get_record(controller_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Controller {controller_id} not found")
        return record.to_dict()

    @router.delete("/{controller_id}")
    async def delete_controller(controller_id: str):
        """Forget a provisioned controller"""
        if not await registry.delete_record(controller_id):
            raise HTTPException(status_code=404, detail=f"Controller {controller_id} not found")
        logger.info(f"Controller {controller_id} removed via API")
        return {"deleted": controller_id}

    return router
