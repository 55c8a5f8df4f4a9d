"""
Provisioning session API routes
"""

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel
from typing import Optional
import logging

from errors import ConnectionFailure, InvalidSessionState, PersistenceFailure, user_message_for
from transport.models import Credentials

logger = logging.getLogger(__name__)


# Request models
class SessionCreateRequest(BaseModel):
    transport: Optional[str] = None  # "ble" or "http"; inferred from device_handle when omitted
    device_handle: Optional[str] = None
    name: Optional[str] = None


class CredentialsRequest(BaseModel):
    network_name: str
    secret: str = ""


class AddressRequest(BaseModel):
    address: str


class ForceAcceptRequest(BaseModel):
    address: str
    name: Optional[str] = None


def create_session_routes(session_manager, ble_channel=None):
    """Create provisioning session routes"""
    router = APIRouter(prefix="/api/provisioning", tags=["provisioning"])

    def _get(session_id: str):
        orchestrator = session_manager.get(session_id)
        if orchestrator is None:
            raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
        return orchestrator

    def _conflict(e: InvalidSessionState):
        return HTTPException(status_code=409, detail=str(e))

    def _unavailable(e: PersistenceFailure):
        return HTTPException(status_code=503, detail=user_message_for(PersistenceFailure.kind))

    @router.get("/scan")
    async def scan_for_controllers(timeout: Optional[float] = None):
        """List nearby controllers in Bluetooth setup mode"""
        if ble_channel is None:
            raise HTTPException(status_code=503, detail="Bluetooth setup is not available on this host")
        try:
            devices = await ble_channel.scan(timeout)
            return {"devices": devices, "count": len(devices)}
        except ConnectionFailure as e:
            logger.error(f"Bluetooth scan failed: {e}")
            raise HTTPException(status_code=503, detail=user_message_for(ConnectionFailure.kind))

    @router.post("/sessions")
    async def create_session(request: SessionCreateRequest):
        """Start a provisioning session"""
        try:
            orchestrator = await session_manager.create_session(
                transport=request.transport,
                device_handle=request.device_handle,
                name=request.name,
            )
        except InvalidSessionState as e:
            raise _conflict(e)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return orchestrator.snapshot().to_dict()

    @router.get("/sessions")
    async def list_sessions():
        """List known sessions, live and recently finished"""
        session_manager.prune()
        sessions = [o.snapshot().to_dict() for o in session_manager.list_sessions()]
        return {"sessions": sessions, "count": len(sessions)}

    @router.get("/sessions/{session_id}")
    async def get_session(session_id: str):
        """Get the current snapshot of a session"""
        return _get(session_id).snapshot().to_dict()

    @router.post("/sessions/{session_id}/credentials")
    async def submit_credentials(session_id: str, request: CredentialsRequest):
        """Send home network credentials to the controller"""
        orchestrator = _get(session_id)
        try:
            credentials = Credentials(request.network_name, request.secret)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        try:
            snapshot = await orchestrator.submit_credentials(credentials)
        except InvalidSessionState as e:
            raise _conflict(e)
        return snapshot.to_dict()

    @router.post("/sessions/{session_id}/manual-address")
    async def submit_manual_address(session_id: str, request: AddressRequest):
        """Verify an address the operator found in their router"""
        orchestrator = _get(session_id)
        try:
            snapshot = await orchestrator.submit_manual_address(request.address)
        except InvalidSessionState as e:
            raise _conflict(e)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return snapshot.to_dict()

    @router.post("/sessions/{session_id}/force-accept")
    async def force_accept(session_id: str, request: ForceAcceptRequest):
        """Add the controller without verification"""
        orchestrator = _get(session_id)
        try:
            record = await orchestrator.force_accept(request.address, request.name)
        except InvalidSessionState as e:
            raise _conflict(e)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except PersistenceFailure as e:
            raise _unavailable(e)
        return {"session": orchestrator.snapshot().to_dict(), "controller": record.to_dict()}

    @router.post("/sessions/{session_id}/retry-discovery")
    async def retry_discovery(session_id: str):
        """Search the network again"""
        orchestrator = _get(session_id)
        try:
            snapshot = await orchestrator.retry_discovery()
        except InvalidSessionState as e:
            raise _conflict(e)
        return snapshot.to_dict()

    @router.post("/sessions/{session_id}/retry-persistence")
    async def retry_persistence(session_id: str):
        """Retry saving a verified controller"""
        orchestrator = _get(session_id)
        try:
            record = await orchestrator.retry_persistence()
        except InvalidSessionState as e:
            raise _conflict(e)
        except PersistenceFailure as e:
            raise _unavailable(e)
        return {"session": orchestrator.snapshot().to_dict(), "controller": record.to_dict()}

    @router.delete("/sessions/{session_id}")
    async def cancel_session(session_id: str):
        """Cancel a session; no record is written"""
        snapshot = await _get(session_id).cancel()
        return snapshot.to_dict()

    return router
