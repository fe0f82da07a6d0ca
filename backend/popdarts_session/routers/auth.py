"""Authentication API endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_core
from ..exceptions import InvalidTransition, ProviderError, SessionCoreError, StoreError
from ..schemas.auth import (
    AuthActionResponse,
    AuthStateResponse,
    CallbackRequest,
    ConvertGuestRequest,
    GuestRequest,
    OAuthRequest,
    SignInRequest,
    SignUpRequest,
)
from ..schemas.session import AuthResult
from ..services.session_core import SessionCore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


def error_status(error: SessionCoreError) -> int:
    """HTTP status for an auth-path error."""
    if isinstance(error, InvalidTransition):
        return 409
    if isinstance(error, ProviderError):
        if error.status_code is None:
            return 502  # provider unreachable
        return 401 if error.is_auth_failure else 502
    if isinstance(error, StoreError):
        return 503
    return 400


def _respond(core: SessionCore, result: AuthResult, clean_url: Optional[str] = None) -> AuthActionResponse:
    if result.error is not None:
        raise HTTPException(status_code=error_status(result.error), detail=str(result.error))

    message = ""
    if result.confirmation_required:
        message = "Check your email to confirm your account"
    return AuthActionResponse(
        success=True,
        auth=AuthStateResponse.from_snapshot(core.manager.snapshot()),
        url=result.url,
        clean_url=clean_url,
        confirmation_required=result.confirmation_required,
        message=message,
    )


@router.get("/state", response_model=AuthStateResponse)
async def get_auth_state(core: SessionCore = Depends(get_core)):
    """Get the current authentication state."""
    return AuthStateResponse.from_snapshot(core.manager.snapshot())


@router.post("/sign-up", response_model=AuthActionResponse)
async def sign_up(request: SignUpRequest, core: SessionCore = Depends(get_core)):
    """Create an account with email and password."""
    result = await core.manager.sign_up(request.email, request.password, request.display_name)
    return _respond(core, result)


@router.post("/sign-in", response_model=AuthActionResponse)
async def sign_in(request: SignInRequest, core: SessionCore = Depends(get_core)):
    """Sign in with email and password."""
    result = await core.manager.sign_in(request.email, request.password)
    return _respond(core, result)


@router.post("/oauth", response_model=AuthActionResponse)
async def sign_in_with_oauth(request: OAuthRequest, core: SessionCore = Depends(get_core)):
    """Start an OAuth sign in. The client opens the returned URL."""
    result = await core.manager.sign_in_with_oauth(request.provider)
    return _respond(core, result)


@router.post("/callback", response_model=AuthActionResponse)
async def oauth_callback(request: CallbackRequest, core: SessionCore = Depends(get_core)):
    """Report the visible URL after an OAuth redirect.

    The client must replace its URL with ``clean_url`` so the callback
    fragment is never parsed twice.
    """
    core.location.replace_url(request.url)
    result = await core.manager.handle_oauth_callback()
    return _respond(core, result, clean_url=core.location.current_url())


@router.post("/sign-out", response_model=AuthActionResponse)
async def sign_out(core: SessionCore = Depends(get_core)):
    """Sign out and remove this device's push registration."""
    result = await core.manager.sign_out()
    if isinstance(result.error, ProviderError):
        # Local state is already cleared; report the failed revocation without failing the call
        logger.warning(f"Remote sign out failed: {result.error}")
        return AuthActionResponse(
            success=True,
            auth=AuthStateResponse.from_snapshot(core.manager.snapshot()),
            message=f"Signed out locally; remote revocation failed: {result.error}",
        )
    return _respond(core, result)


@router.post("/guest", response_model=AuthActionResponse)
async def enable_guest_mode(request: GuestRequest, core: SessionCore = Depends(get_core)):
    """Use the app as a guest without an account."""
    result = await core.manager.enable_guest_mode(request.name)
    return _respond(core, result)


@router.post("/convert-guest", response_model=AuthActionResponse)
async def convert_guest(request: ConvertGuestRequest, core: SessionCore = Depends(get_core)):
    """Turn the current guest into a full account."""
    result = await core.manager.convert_guest_to_account(
        request.email,
        request.password,
        request.display_name,
    )
    return _respond(core, result)
