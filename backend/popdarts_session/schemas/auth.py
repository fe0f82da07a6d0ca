"""Auth and notification schemas for API."""
from datetime import datetime
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field

from .session import AuthSnapshot


class SignUpRequest(BaseModel):
    """Schema for creating an account."""
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=6)
    display_name: str = Field(..., min_length=1, max_length=100)


class SignInRequest(BaseModel):
    """Schema for email/password sign in."""
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=1)


class OAuthRequest(BaseModel):
    """Schema for starting an OAuth redirect."""
    provider: str = "google"


class CallbackRequest(BaseModel):
    """Visible URL reported by a web client after a redirect."""
    url: str


class GuestRequest(BaseModel):
    """Schema for entering guest mode."""
    name: str = Field(..., min_length=1, max_length=100)


class ConvertGuestRequest(BaseModel):
    """Schema for converting a guest into an account."""
    email: str = Field(..., min_length=3, max_length=320)
    password: str = Field(..., min_length=6)
    display_name: Optional[str] = Field(None, max_length=100)


class UserInfo(BaseModel):
    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None


class AuthStateResponse(BaseModel):
    """Current authentication state."""
    state: Literal["unauthenticated", "guest", "authenticating", "authenticated", "signing_out"]
    user: Optional[UserInfo] = None
    expires_at: Optional[datetime] = None
    is_guest: bool = False
    guest_name: str = ""

    @classmethod
    def from_snapshot(cls, snapshot: AuthSnapshot) -> "AuthStateResponse":
        session = snapshot.session
        return cls(
            state=snapshot.state.value,
            user=UserInfo(
                id=session.user_id,
                email=session.email,
                display_name=session.display_name,
            ) if session else None,
            expires_at=session.expires_at if session else None,
            is_guest=snapshot.guest.is_guest,
            guest_name=snapshot.guest.display_name,
        )


class AuthActionResponse(BaseModel):
    """Result of an auth operation."""
    success: bool
    auth: AuthStateResponse
    url: Optional[str] = None  # OAuth authorize URL to open
    clean_url: Optional[str] = None  # Visible URL with the callback stripped
    confirmation_required: bool = False
    message: str = ""


class PushEnabledRequest(BaseModel):
    enabled: bool


class PreferencesResponse(BaseModel):
    """Notification preferences (camelCase keys)."""
    success: bool
    preferences: Optional[Dict[str, bool]] = None
    message: str = ""
    permission_status: Optional[str] = None


class DeviceReport(BaseModel):
    """Device facts reported by the native shell."""
    is_device: bool
    os: Literal["ios", "android", "web"]
    device_name: Optional[str] = Field(None, max_length=200)


class PermissionReport(BaseModel):
    status: Literal["granted", "denied", "undetermined"]


class TokenReport(BaseModel):
    token: str = Field(..., min_length=1)
