"""Device bridge API endpoints called by the native app shell."""
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from ..dependencies import get_core
from ..exceptions import StoreError
from ..schemas.auth import DeviceReport, PermissionReport, TokenReport
from ..schemas.session import AuthState
from ..services.permission_negotiator import PermissionStatus
from ..services.session_core import SessionCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/device", tags=["device"])


class DeviceAck(BaseModel):
    """Acknowledgement for a shell report."""
    success: bool
    message: str


@router.post("/report", response_model=DeviceAck)
async def report_device(request: DeviceReport, core: SessionCore = Depends(get_core)):
    """Report whether the app runs on a physical device, and which OS."""
    core.bridge.report_device(request.is_device, request.os, request.device_name)
    return DeviceAck(success=True, message="Device reported")


@router.post("/permission", response_model=DeviceAck)
async def report_permission(request: PermissionReport, core: SessionCore = Depends(get_core)):
    """Report the notification permission status (also answers a pending prompt)."""
    core.bridge.report_permission(PermissionStatus(request.status))
    return DeviceAck(success=True, message=f"Permission {request.status}")


@router.post("/token", response_model=DeviceAck)
async def report_token(request: TokenReport, core: SessionCore = Depends(get_core)):
    """Report the push token issued by the notification platform.

    The shell should call this on every launch so the token is current.
    """
    core.bridge.report_token(request.token)
    logger.info(f"Device token reported: {request.token[:16]}...")
    return DeviceAck(success=True, message="Token received")


@router.get("/registrations")
async def get_registrations(core: SessionCore = Depends(get_core)):
    """List the signed-in user's registered devices."""
    if core.manager.state != AuthState.AUTHENTICATED:
        raise HTTPException(status_code=401, detail="Sign in to list devices")

    try:
        devices = await core.manager.list_devices()
    except StoreError as e:
        raise HTTPException(status_code=503, detail=str(e))

    # Registration may still be finishing; the shell's token names this device
    active = core.manager.active_device_token() or core.bridge.reported_token
    return {
        "total": len(devices),
        "devices": [
            {
                "platform": device.platform,
                "device_name": device.device_name,
                "updated_at": device.updated_at,
                "this_device": device.token == active,
            }
            for device in devices
        ],
    }
