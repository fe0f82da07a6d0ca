"""Pydantic schemas and session value types."""
from .session import (
    AuthState,
    AuthEventType,
    AuthEvent,
    AuthResult,
    AuthSnapshot,
    GuestProfile,
    PlatformCapabilities,
    Session,
)
from .device import (
    DeviceToken,
    NotificationPreferences,
)
from .auth import (
    AuthActionResponse,
    AuthStateResponse,
    PreferencesResponse,
)

__all__ = [
    "AuthState",
    "AuthEventType",
    "AuthEvent",
    "AuthResult",
    "AuthSnapshot",
    "GuestProfile",
    "PlatformCapabilities",
    "Session",
    "DeviceToken",
    "NotificationPreferences",
    "AuthActionResponse",
    "AuthStateResponse",
    "PreferencesResponse",
]
