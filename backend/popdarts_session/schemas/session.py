"""Session, guest and auth state types shared by the session core."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional

from ..exceptions import SessionCoreError
from .device import NotificationPreferences


class AuthState(str, Enum):
    """States of the authentication state machine."""
    UNAUTHENTICATED = "unauthenticated"
    GUEST = "guest"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SIGNING_OUT = "signing_out"


class AuthEventType(str, Enum):
    """Events emitted by the identity provider."""
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"
    PASSWORD_RECOVERY = "PASSWORD_RECOVERY"


@dataclass(frozen=True)
class Session:
    """Provider-issued session. Replaced wholesale, never mutated."""
    user_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime  # naive UTC
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any]) -> "Session":
        """Build a session from a GoTrue token response.

        Raises:
            KeyError: If the payload lacks the tokens or the user id
        """
        user = payload.get("user") or {}
        if payload.get("expires_at"):
            expires_at = datetime.utcfromtimestamp(int(payload["expires_at"]))
        else:
            expires_in = int(payload.get("expires_in") or 3600)
            expires_at = datetime.utcnow() + timedelta(seconds=expires_in)
        return cls(
            user_id=user["id"],
            access_token=payload["access_token"],
            refresh_token=payload["refresh_token"],
            expires_at=expires_at,
            email=user.get("email"),
            user_metadata=dict(user.get("user_metadata") or {}),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            user_id=data["user_id"],
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=datetime.fromisoformat(data["expires_at"]),
            email=data.get("email"),
            user_metadata=dict(data.get("user_metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat(),
            "email": self.email,
            "user_metadata": dict(self.user_metadata),
        }

    def is_expired(self, margin_seconds: int = 0) -> bool:
        return datetime.utcnow() + timedelta(seconds=margin_seconds) >= self.expires_at

    @property
    def display_name(self) -> Optional[str]:
        return self.user_metadata.get("display_name")


@dataclass(frozen=True)
class GuestProfile:
    """Locally persisted pseudo-identity."""
    is_guest: bool = False
    display_name: str = ""


NO_GUEST = GuestProfile()


@dataclass(frozen=True)
class AuthEvent:
    """One provider event. ``session`` is None for SIGNED_OUT."""
    type: AuthEventType
    session: Optional[Session] = None


@dataclass
class AuthResult:
    """Outcome of an authentication operation, returned to the caller."""
    session: Optional[Session] = None
    error: Optional[SessionCoreError] = None
    url: Optional[str] = None  # OAuth authorize URL
    confirmation_required: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class PlatformCapabilities:
    """Target capabilities decided once at startup."""
    has_redirect_url: bool = False
    redirect_url: Optional[str] = None


@dataclass(frozen=True)
class AuthSnapshot:
    """State published to subscribers after every change."""
    state: AuthState
    session: Optional[Session] = None
    guest: GuestProfile = NO_GUEST
    preferences: Optional[NotificationPreferences] = None

    @property
    def user_id(self) -> Optional[str]:
        return self.session.user_id if self.session else None
