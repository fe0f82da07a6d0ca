"""Notification preference API endpoints."""
import logging
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_core
from ..schemas.auth import PreferencesResponse, PushEnabledRequest
from ..schemas.session import AuthState
from ..services.push_lifecycle import PreferencesResult
from ..services.session_core import SessionCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


def _require_user(core: SessionCore):
    if core.manager.state != AuthState.AUTHENTICATED:
        raise HTTPException(status_code=401, detail="Sign in to manage notifications")


def _to_response(result: PreferencesResult) -> PreferencesResponse:
    return PreferencesResponse(
        success=result.ok,
        preferences=result.preferences.to_storage() if result.preferences else None,
        message=result.message,
        permission_status=result.permission_status.value if result.permission_status else None,
    )


@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(core: SessionCore = Depends(get_core)):
    """Get notification preferences for this device."""
    _require_user(core)
    preferences = await core.manager.get_notification_preferences()
    if preferences is None:
        return PreferencesResponse(success=False, message="No registered device for notifications")
    return PreferencesResponse(success=True, preferences=preferences.to_storage())


@router.patch("/preferences", response_model=PreferencesResponse)
async def update_preferences(patch: Dict[str, bool], core: SessionCore = Depends(get_core)):
    """Change individual notification preferences.

    Keys may be camelCase (``flashSales``) or snake_case (``flash_sales``).
    """
    _require_user(core)
    result = await core.manager.update_notification_preferences(patch)
    if isinstance(result.error, ValueError):
        raise HTTPException(status_code=422, detail=result.message)
    return _to_response(result)


@router.post("/enabled", response_model=PreferencesResponse)
async def set_enabled(request: PushEnabledRequest, core: SessionCore = Depends(get_core)):
    """Turn push notifications on or off. Enabling asks for OS permission."""
    _require_user(core)
    result = await core.manager.set_push_notifications_enabled(request.enabled)
    return _to_response(result)
