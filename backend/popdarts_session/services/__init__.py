"""Services for authentication sessions and push registration."""
from .auth_manager import AuthSessionManager
from .push_lifecycle import PushTokenLifecycle
from .permission_negotiator import PermissionNegotiator
from .token_store import TokenStore
from .websocket_manager import ConnectionManager

__all__ = ["AuthSessionManager", "PushTokenLifecycle", "PermissionNegotiator", "TokenStore", "ConnectionManager"]
